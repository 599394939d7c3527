from __future__ import annotations

import pytest

from dagci.config import Settings


def test_defaults():
    s = Settings.from_env({})
    assert s.workers is None
    assert s.cache_dir == ".dagci/cache"
    assert s.work_dir == ".dagci/work"
    assert s.provision_retries == 3
    assert s.grace_period == 5.0
    assert "local" in s.runner_labels


def test_from_env():
    s = Settings.from_env({
        "DAGCI_WORKERS": "4",
        "DAGCI_CACHE_DIR": "/tmp/c",
        "DAGCI_GRACE_PERIOD": "1.5",
        "DAGCI_RUNNER_LABELS": "local, gpu ,",
        "DAGCI_LOG_LEVEL": "info",
    })
    assert s.workers == 4
    assert s.cache_dir == "/tmp/c"
    assert s.grace_period == 1.5
    assert s.runner_labels == ["local", "gpu"]
    assert s.log_level == "INFO"


def test_bad_number():
    with pytest.raises(ValueError, match="DAGCI_WORKERS"):
        Settings.from_env({"DAGCI_WORKERS": "many"})


def test_override_ignores_missing_flags():
    s = Settings.from_env({"DAGCI_WORKERS": "4"}).override(workers=None, cache_dir="/x")
    assert s.workers == 4
    assert s.cache_dir == "/x"

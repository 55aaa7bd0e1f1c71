import threading

import pytest

from tensor_regions.errors import InconsistentDomainVersionError
from tensor_regions.provider.domain_registry import DomainVersionRegistry


def test_record_and_repeat():
    registry = DomainVersionRegistry()
    registry.record("", 11)
    registry.record("", 11)
    registry.record("com.microsoft", 1)
    assert registry.get("") == 11
    assert registry.get("com.microsoft") == 1
    assert registry.get("missing") is None
    assert sorted(registry.items()) == [("", 11), ("com.microsoft", 1)]


def test_mismatch_is_fatal():
    registry = DomainVersionRegistry()
    registry.record("", 11)
    with pytest.raises(InconsistentDomainVersionError, match="one provider instance for each session"):
        registry.record("", 12)
    assert registry.get("") == 11


def test_record_all_is_all_or_nothing():
    registry = DomainVersionRegistry()
    registry.record_all({"": 11})
    with pytest.raises(InconsistentDomainVersionError):
        registry.record_all({"com.microsoft": 1, "": 10})
    assert "com.microsoft" not in registry
    assert len(registry) == 1


def test_concurrent_records_keep_one_version():
    registry = DomainVersionRegistry()
    errors = []

    def worker(version):
        try:
            registry.record("custom", version)
        except InconsistentDomainVersionError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(1 + i % 2,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    winner = registry.get("custom")
    assert winner in (1, 2)
    assert len(errors) == 5

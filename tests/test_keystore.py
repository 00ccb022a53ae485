"""Tests for key share stores."""

import os
import tempfile
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from cryptography.exceptions import InvalidTag

from quorumgate.errors import ConfigError
from quorumgate.keystore import FileKeyShareStore, KeyShare, MemoryKeyShareStore
from quorumgate.shamir import generate_shares, reconstruct_secret


def _key_shares(key_id="k1", secret=123456789, threshold=2, total=3):
    return [KeyShare.from_share(key_id, s, participant=f"holder-{s.index}")
            for s in generate_shares(secret, threshold, total)]


def test_memory_store_put_get_destroy():
    store = MemoryKeyShareStore()
    for ks in _key_shares():
        store.put(ks)

    assert store.key_ids() == ["k1"]
    assert [s.share_index for s in store.shares_for("k1")] == [1, 2, 3]
    assert store.get("k1", 2).participant == "holder-2"
    assert store.get("k1", 9) is None
    assert store.get("missing", 1) is None

    assert store.destroy("k1") == 3
    assert store.shares_for("k1") == []
    assert store.key_ids() == []
    print("  [PASS] Memory store put/get/destroy")


def test_memory_store_shares_are_immutable():
    store = MemoryKeyShareStore()
    shares = _key_shares()
    store.put(shares[0])
    try:
        store.put(shares[0])
        raise AssertionError("second put for the same slot accepted")
    except ConfigError:
        pass
    print("  [PASS] Memory store rejects overwrite")


def test_file_store_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        key = os.urandom(32)
        store = FileKeyShareStore(tmpdir, key)
        shares = _key_shares("payments-key")
        for ks in shares:
            store.put(ks)

        # Nothing readable on disk
        for enc in Path(tmpdir).glob("*.enc"):
            assert b"payments-key" not in enc.read_bytes()

        reopened = FileKeyShareStore(tmpdir, key)
        loaded = reopened.shares_for("payments-key")
        assert loaded == shares
        assert reconstruct_secret([s.as_share() for s in loaded[:2]]) == 123456789
        assert reopened.key_ids() == ["payments-key"]

        assert reopened.destroy("payments-key") == 3
        assert reopened.shares_for("payments-key") == []
        assert list(Path(tmpdir).iterdir()) == []
        print("  [PASS] File store round trip")


def test_file_store_wrong_key_fails():
    with tempfile.TemporaryDirectory() as tmpdir:
        FileKeyShareStore(tmpdir, os.urandom(32)).put(_key_shares()[0])
        other = FileKeyShareStore(tmpdir, os.urandom(32))
        try:
            other.get("k1", 1)
            raise AssertionError("decrypted with the wrong key")
        except InvalidTag:
            pass
        print("  [PASS] File store rejects wrong key")


def test_file_store_rejects_bad_key_and_overwrite():
    with tempfile.TemporaryDirectory() as tmpdir:
        try:
            FileKeyShareStore(tmpdir, b"short")
            raise AssertionError("accepted a short key")
        except ConfigError:
            pass

        store = FileKeyShareStore(tmpdir, os.urandom(32))
        share = _key_shares()[0]
        store.put(share)
        try:
            store.put(share)
            raise AssertionError("second put for the same slot accepted")
        except ConfigError:
            pass
        print("  [PASS] File store validation")


def test_key_share_dict_form():
    share = _key_shares()[1]
    assert KeyShare.from_dict(share.to_dict()) == share
    assert share.as_share().index == share.share_index
    print("  [PASS] KeyShare dict form")


if __name__ == "__main__":
    print("Key Share Store Tests")
    print("=" * 40)
    test_memory_store_put_get_destroy()
    test_memory_store_shares_are_immutable()
    test_file_store_round_trip()
    test_file_store_wrong_key_fails()
    test_file_store_rejects_bad_key_and_overwrite()
    test_key_share_dict_form()
    print("=" * 40)
    print("All key store tests passed!")

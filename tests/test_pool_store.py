"""
Wallet Pool Store Tests
=======================

Run with: pytest tests/ -v
"""

import os
import sys
import stat
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from swarm.pool import WalletPoolStore, WalletRecord, VOLUME_POOL, MARKET_MAKER_POOL
from utils import PersistenceError


class TestWalletRecord:
    def test_generate(self):
        record = WalletRecord.generate(1_000)
        assert str(record.keypair().pubkey()) == record.public_id
        assert record.allocated_amount == 1_000

    def test_from_dict_ignores_unknown(self):
        record = WalletRecord.generate()
        data = record.to_dict()
        data["extra"] = "ignored"
        assert WalletRecord.from_dict(data) == record


class TestWalletPoolStore:
    def test_missing_pool_is_empty(self, pool_store):
        assert pool_store.load(VOLUME_POOL) == []
        assert pool_store.count(VOLUME_POOL) == 0

    def test_append_preserves_order(self, pool_store):
        records = [WalletRecord.generate(i) for i in range(5)]
        pool_store.append(VOLUME_POOL, records[:3])
        pool_store.append(VOLUME_POOL, records[3:])

        loaded = pool_store.load(VOLUME_POOL)
        assert [r.public_id for r in loaded] == [r.public_id for r in records]

    def test_duplicates_skipped(self, pool_store):
        record = WalletRecord.generate(1)
        pool_store.append(VOLUME_POOL, [record])
        pool_store.append(VOLUME_POOL, [record, record])
        assert pool_store.count(VOLUME_POOL) == 1

    def test_pools_are_separate(self, pool_store):
        pool_store.append(VOLUME_POOL, [WalletRecord.generate()])
        assert pool_store.count(MARKET_MAKER_POOL) == 0

    def test_remove(self, pool_store):
        records = [WalletRecord.generate() for _ in range(3)]
        pool_store.append(MARKET_MAKER_POOL, records)

        assert pool_store.remove(MARKET_MAKER_POOL, records[1].public_id) == 1
        assert pool_store.remove(MARKET_MAKER_POOL, records[1].public_id) == 0

        remaining = [r.public_id for r in pool_store.load(MARKET_MAKER_POOL)]
        assert remaining == [records[0].public_id, records[2].public_id]

    def test_file_permissions(self, pool_store):
        pool_store.append(VOLUME_POOL, [WalletRecord.generate()])
        if os.name != 'nt':
            mode = pool_store.path_for(VOLUME_POOL).stat().st_mode
            assert stat.S_IMODE(mode) == 0o600

    def test_corrupted_pool_raises(self, pool_store):
        path = pool_store.path_for(VOLUME_POOL)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("[broken")
        with pytest.raises(PersistenceError):
            pool_store.load(VOLUME_POOL)

    def test_concurrent_removals_do_not_lose_updates(self, pool_store):
        records = [WalletRecord.generate() for _ in range(20)]
        pool_store.append(VOLUME_POOL, records)

        threads = [
            threading.Thread(target=pool_store.remove, args=(VOLUME_POOL, r.public_id))
            for r in records
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert pool_store.load(VOLUME_POOL) == []


class TestEncryptedPool:
    def test_secrets_encrypted_at_rest(self, config):
        store = WalletPoolStore(config.data_dir, password="pool_password_1")
        record = WalletRecord.generate(5)
        store.append(VOLUME_POOL, [record])

        raw = store.path_for(VOLUME_POOL).read_text()
        assert record.secret not in raw
        assert record.public_id in raw

        assert store.load(VOLUME_POOL) == [record]

    def test_password_required(self, config):
        WalletPoolStore(config.data_dir, password="pool_password_1").append(
            VOLUME_POOL, [WalletRecord.generate()]
        )
        with pytest.raises(PersistenceError):
            WalletPoolStore(config.data_dir).load(VOLUME_POOL)

    def test_wrong_password(self, config):
        WalletPoolStore(config.data_dir, password="pool_password_1").append(
            VOLUME_POOL, [WalletRecord.generate()]
        )
        with pytest.raises(PersistenceError):
            WalletPoolStore(config.data_dir, password="wrong_password").load(VOLUME_POOL)

    def test_count_without_password(self, config):
        WalletPoolStore(config.data_dir, password="pool_password_1").append(
            VOLUME_POOL, [WalletRecord.generate(), WalletRecord.generate()]
        )
        assert WalletPoolStore(config.data_dir).count(VOLUME_POOL) == 2

"""
Wallet Pool Store
=================
Persists the sub-wallets of each bot variant so funds can always be
recovered, even when a run dies halfway through a funding cycle.

One JSON file per pool (``<data_dir>/<pool>_wallets.json``). Writes are
serialized with a lock and land via temp file + rename, so two wallet
workflows removing themselves at once never lose each other's update.

SECURITY:
- Files are chmod 0600
- With a password, secrets are encrypted at rest (PBKDF2 + Fernet)
"""

import os
import json
import base64
import threading
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass, asdict, field
from typing import Dict, List, Optional, Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from solders.keypair import Keypair

from utils import logger, write_json_atomic, PersistenceError

VOLUME_POOL = "volume_bot"
MARKET_MAKER_POOL = "market_maker"
POOL_NAMES = (VOLUME_POOL, MARKET_MAKER_POOL)


@dataclass
class WalletRecord:
    """A generated sub-wallet and the amount it was funded with."""
    secret: str                       # base58 keypair
    public_id: str                    # base58 public key
    allocated_amount: int = 0         # lamports
    created_at: str = field(default_factory=lambda: datetime.now().isoformat())

    @classmethod
    def generate(cls, allocated_amount: int = 0) -> "WalletRecord":
        keypair = Keypair()
        return cls(
            secret=str(keypair),
            public_id=str(keypair.pubkey()),
            allocated_amount=allocated_amount,
        )

    def keypair(self) -> Keypair:
        return Keypair.from_base58_string(self.secret)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WalletRecord":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


class WalletPoolStore:
    """
    Named, ordered wallet pools on disk.

    Invariant: a public id appears at most once per pool. Insertion order is
    preserved for operator auditing.
    """

    KDF_ITERATIONS = 480000

    def __init__(self, data_dir: str = "./data", password: Optional[str] = None):
        self.data_dir = Path(data_dir)
        self.password = password
        self._lock = threading.RLock()

    def path_for(self, pool: str) -> Path:
        return self.data_dir / f"{pool}_wallets.json"

    # Encryption

    def _fernet(self, salt: bytes) -> Fernet:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.KDF_ITERATIONS,
        )
        return Fernet(base64.urlsafe_b64encode(kdf.derive(self.password.encode())))

    def _encode(self, records: List[WalletRecord], salt: Optional[bytes]) -> Dict[str, Any]:
        entries = [r.to_dict() for r in records]
        data: Dict[str, Any] = {
            'version': '1.0',
            'updated_at': datetime.now().isoformat(),
            'encrypted': bool(self.password),
        }
        if self.password:
            salt = salt or os.urandom(16)
            f = self._fernet(salt)
            for entry in entries:
                entry['secret'] = f.encrypt(entry['secret'].encode()).decode()
            data['salt'] = base64.b64encode(salt).decode()
        data['wallets'] = entries
        return data

    def _decode(self, pool: str, data: Dict[str, Any]) -> List[WalletRecord]:
        entries = data.get('wallets', [])
        if data.get('encrypted'):
            if not self.password:
                raise PersistenceError(f"Pool '{pool}' is encrypted; a password is required")
            f = self._fernet(base64.b64decode(data['salt']))
            try:
                for entry in entries:
                    entry['secret'] = f.decrypt(entry['secret'].encode()).decode()
            except InvalidToken:
                raise PersistenceError(f"Wrong password for pool '{pool}'")
        return [WalletRecord.from_dict(e) for e in entries]

    # Raw IO (callers hold the lock)

    def _read_raw(self, pool: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(pool)
        if not path.exists():
            return None
        try:
            with open(path, 'r') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read pool '{pool}': {e}") from e

    def _read(self, pool: str):
        data = self._read_raw(pool)
        if data is None:
            return [], None
        salt = base64.b64decode(data['salt']) if data.get('salt') else None
        return self._decode(pool, data), salt

    def _write(self, pool: str, records: List[WalletRecord], salt: Optional[bytes]):
        try:
            write_json_atomic(self.path_for(pool), self._encode(records, salt))
        except OSError as e:
            raise PersistenceError(f"Failed to write pool '{pool}': {e}") from e

    # Public API

    def load(self, pool: str) -> List[WalletRecord]:
        """Load a pool. A missing file is an empty pool; an unreadable one raises."""
        with self._lock:
            records, _ = self._read(pool)
            return records

    def append(self, pool: str, records: List[WalletRecord]):
        """Append records, skipping public ids already present."""
        with self._lock:
            existing, salt = self._read(pool)
            known = {r.public_id for r in existing}
            added = 0
            for record in records:
                if record.public_id in known:
                    logger.warning(f"Wallet {record.public_id} already in pool '{pool}', skipping")
                    continue
                existing.append(record)
                known.add(record.public_id)
                added += 1
            self._write(pool, existing, salt)
            logger.debug(f"Pool '{pool}': +{added} wallets ({len(existing)} total)")

    def remove(self, pool: str, public_ids) -> int:
        """Remove the given public ids; returns how many were removed."""
        if isinstance(public_ids, str):
            public_ids = [public_ids]
        targets = set(public_ids)
        with self._lock:
            existing, salt = self._read(pool)
            kept = [r for r in existing if r.public_id not in targets]
            removed = len(existing) - len(kept)
            if removed:
                self._write(pool, kept, salt)
            return removed

    def replace(self, pool: str, records: List[WalletRecord]):
        with self._lock:
            _, salt = self._read(pool)
            self._write(pool, list(records), salt)

    def count(self, pool: str) -> int:
        """Number of wallets in a pool. Secrets are not decrypted."""
        with self._lock:
            data = self._read_raw(pool)
            return len(data.get('wallets', [])) if data else 0

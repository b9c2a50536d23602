"""
Order Store — wallet identities and their orders, persisted as JSON.

Two keyed tables:
  users   (wallet_address, network) → id, email, timestamps
  orders  order_id                   → user_id, network, hashed client secret, timestamps

Both are upserts. save_order() writes a user and an order as one unit:
the new state is only committed in memory after the file write succeeds.
"""

import json
import logging
import os
import tempfile
import threading
import time
import uuid
from copy import deepcopy
from pathlib import Path
from typing import Optional

from core.client_secret import hash_client_secret

logger = logging.getLogger("purch.store")

NETWORKS = ("solana", "base")


class StoreError(Exception):
    """Order record could not be persisted."""


def _user_key(wallet_address: str, network: str) -> str:
    return f"{network}:{wallet_address}"


class OrderStore:
    """JSON-file backed upsert store."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)
        self.store_file = self.data_dir / "orders" / "orders.json"
        self._users: dict[str, dict] = {}
        self._orders: dict[str, dict] = {}
        # save_order runs in executor threads; upserts are serialized
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        if not self.store_file.exists():
            return
        try:
            data = json.loads(self.store_file.read_text(encoding="utf-8"))
            users, orders = data["users"], data["orders"]
            if not isinstance(users, dict) or not isinstance(orders, dict):
                raise ValueError("users and orders must be objects")
        except (OSError, ValueError, KeyError, TypeError) as e:
            # Never overwrite an unreadable store: it holds every order's secret hash
            logger.error(f"Order store {self.store_file} is unreadable, refusing to start: {e}")
            raise StoreError(f"Unreadable order store {self.store_file}: {e}") from e
        self._users, self._orders = users, orders
        logger.info(f"Loaded {len(self._orders)} orders for {len(self._users)} wallets")

    def _write(self, users: dict, orders: dict):
        self.store_file.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps({"users": users, "orders": orders}, indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=self.store_file.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_path, self.store_file)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def save_order(self, order_id: str, email: str, payer_address: str,
                   network: str, client_secret: str) -> dict:
        """
        Upsert the payer's wallet identity and the order record together.

        Returns the stored order (client secret hashed). Raises StoreError.
        """
        if network not in NETWORKS:
            raise StoreError(f"Unsupported network: {network}")

        hashed_secret = hash_client_secret(client_secret)
        with self._lock:
            order = self._upsert(order_id, email, payer_address, network, hashed_secret)
        logger.info(f"Persisted order record {order_id}")
        return order

    def _upsert(self, order_id: str, email: str, payer_address: str,
                network: str, hashed_secret: str) -> dict:
        now = time.time()
        users = deepcopy(self._users)
        orders = deepcopy(self._orders)

        key = _user_key(payer_address, network)
        user = users.get(key)
        if user is None:
            user = {
                "id": str(uuid.uuid4()),
                "wallet_address": payer_address,
                "network": network,
                "created_at": now,
            }
            users[key] = user
        user["email"] = email
        user["updated_at"] = now

        order = orders.get(order_id) or {"id": order_id, "created_at": now}
        order.update({
            "user_id": user["id"],
            "network": network,
            "client_secret": hashed_secret,
            "updated_at": now,
        })
        orders[order_id] = order

        try:
            self._write(users, orders)
        except OSError as e:
            raise StoreError(f"Failed to write order store: {e}") from e

        self._users, self._orders = users, orders
        return dict(order)

    def get_order_secret_hash(self, order_id: str) -> Optional[str]:
        order = self._orders.get(order_id)
        return order["client_secret"] if order else None

    def get_user(self, wallet_address: str, network: str) -> Optional[dict]:
        user = self._users.get(_user_key(wallet_address, network))
        return dict(user) if user else None

    def get_status(self) -> dict:
        return {"orders": len(self._orders), "users": len(self._users)}

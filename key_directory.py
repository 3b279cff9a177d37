# key_directory.py
"""
Public keys admitted by the server, indexed by client id (digest of the PEM
file). Loaded from a single PEM file or a directory of *.pem files and
reloadable at runtime.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Dict, Optional

from cryptography.hazmat.primitives.asymmetric import rsa

from tunnel_crypto import file_digest, load_public_key


logger = logging.getLogger(__name__)


def load_public_keys(path: str) -> Dict[str, rsa.RSAPublicKey]:
    keys: Dict[str, rsa.RSAPublicKey] = {}
    if os.path.isdir(path):
        logger.info("Using public keys in directory %s for connection certification", path)
        for name in sorted(os.listdir(path)):
            if not name.lower().endswith(".pem"):
                continue
            key_path = os.path.join(path, name)
            keys[file_digest(key_path)] = load_public_key(key_path)
            logger.info("Loaded public key %s", key_path)
    else:
        keys[file_digest(path)] = load_public_key(path)
        logger.info("Using public key %s for connection certification", path)
    return keys


class KeyDirectory:
    def __init__(self, path: Optional[str] = None, reload_interval: float = 0) -> None:
        self.path = path
        self.reload_interval = reload_interval  # seconds, 0 disables periodic reload
        self.last_reload = 0.0
        self._keys: Dict[str, rsa.RSAPublicKey] = {}
        self._lock = threading.Lock()

    def reload(self) -> None:
        with self._lock:
            self.last_reload = time.time()
            if not self.path:
                return
            if not os.path.exists(self.path):
                logger.warning("Public key path %s does not exist", self.path)
                return
            self._keys = load_public_keys(self.path)

    def maybe_reload(self) -> bool:
        """Reload if periodic reload is on and the interval has elapsed."""
        if self.reload_interval <= 0:
            return False
        if time.time() - self.last_reload <= self.reload_interval:
            return False
        self.reload()
        return True

    def get(self, client_id: Optional[str]) -> Optional[rsa.RSAPublicKey]:
        if not client_id:
            return None
        with self._lock:
            return self._keys.get(client_id)

    def __contains__(self, client_id: object) -> bool:
        with self._lock:
            return client_id in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def is_empty(self) -> bool:
        return len(self) == 0

"""
Content-addressed document stores for settlement evidence.

Interface (DocumentStore):
    put(data) -> address      store bytes, return a stable address
    get(address) -> bytes     raise DocumentNotFoundError if unknown
    pin(address) -> None      retain content against garbage collection

Two implementations:
    LocalDocumentStore   files under a directory, addressed by SHA-256
    IPFSDocumentStore    an IPFS node's HTTP API (add / cat / pin/add)
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Set

import httpx

from agritrust.core.crypto import evidence_digest
from agritrust.core.exceptions import (
    DocumentNotFoundError,
    DocumentStoreError,
    QuotaExceededError,
    TransientIOError,
)

logger = logging.getLogger(__name__)


class DocumentStore(ABC):
    """Capability interface consumed by proof submission and verification."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        ...

    @abstractmethod
    def get(self, address: str) -> bytes:
        ...

    @abstractmethod
    def pin(self, address: str) -> None:
        ...


class LocalDocumentStore(DocumentStore):
    """
    Filesystem store. The address of a document is "sha256-<hex digest>",
    so put() is idempotent and get() can be re-checked by anyone.

    Layout:
        <root>/objects/<first two hex chars>/<hex digest>
        <root>/pins.json
    """

    ADDRESS_PREFIX = "sha256-"

    def __init__(self, root: Path, quota_bytes: Optional[int] = None) -> None:
        self.root        = Path(root)
        self.quota_bytes = quota_bytes
        self._objects    = self.root / "objects"
        self._pins_file  = self.root / "pins.json"
        self._lock       = threading.Lock()
        self._objects.mkdir(parents=True, exist_ok=True)
        self._pins: Set[str] = self._load_pins()

    def put(self, data: bytes) -> str:
        digest  = evidence_digest(data)
        address = self.ADDRESS_PREFIX + digest
        path    = self._path_for(address)

        with self._lock:
            if path.exists():
                return address
            if self.quota_bytes is not None and self.used_bytes() + len(data) > self.quota_bytes:
                raise QuotaExceededError(
                    "document store quota exceeded",
                    {"quota_bytes": self.quota_bytes, "size": len(data)},
                )
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp = path.with_suffix(".tmp")
                with open(tmp, "wb") as f:
                    f.write(bytes(data))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except OSError as exc:
                raise TransientIOError(f"document write failed: {exc}") from exc

        logger.info("stored document %s (%d bytes)", address, len(data))
        return address

    def get(self, address: str) -> bytes:
        path = self._path_for(address)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(
                "document not found", {"address": address}
            ) from exc
        except OSError as exc:
            raise TransientIOError(f"document read failed: {exc}") from exc

    def pin(self, address: str) -> None:
        if not self._path_for(address).exists():
            raise DocumentNotFoundError("cannot pin unknown document", {"address": address})
        with self._lock:
            if address in self._pins:
                return
            self._pins.add(address)
            self._save_pins()
        logger.info("pinned document %s", address)

    def is_pinned(self, address: str) -> bool:
        return address in self._pins

    def used_bytes(self) -> int:
        return sum(p.stat().st_size for p in self._objects.rglob("*") if p.is_file())

    # ── Internal ──────────────────────────────────────────────

    def _path_for(self, address: str) -> Path:
        if not isinstance(address, str) or not address.startswith(self.ADDRESS_PREFIX):
            raise DocumentNotFoundError("malformed document address", {"address": address})
        digest = address[len(self.ADDRESS_PREFIX):]
        if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
            raise DocumentNotFoundError("malformed document address", {"address": address})
        return self._objects / digest[:2] / digest

    def _load_pins(self) -> Set[str]:
        if not self._pins_file.exists():
            return set()
        with open(self._pins_file, "r", encoding="utf-8") as f:
            return set(json.load(f))

    def _save_pins(self) -> None:
        tmp = self._pins_file.with_suffix(".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(sorted(self._pins), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._pins_file)
        except OSError as exc:
            raise TransientIOError(f"pin index write failed: {exc}") from exc


class IPFSDocumentStore(DocumentStore):
    """
    Client for an IPFS node's HTTP API (Kubo /api/v0).

    Addresses are CIDs. Connection problems and 5xx responses become
    TransientIOError; unknown CIDs become DocumentNotFoundError.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:5001/api/v0",
        timeout:  float = 30.0,
        headers:  Optional[dict] = None,
        client:   Optional[httpx.Client] = None,
    ) -> None:
        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers=headers or {},
        )

    def put(self, data: bytes) -> str:
        response = self._post(
            "/add",
            params={"pin": "false", "cid-version": "1"},
            files={"file": ("evidence", bytes(data))},
        )
        try:
            cid = response.json()["Hash"]
        except (ValueError, KeyError) as exc:
            raise DocumentStoreError(f"unexpected IPFS add response: {response.text[:200]}") from exc
        logger.info("stored document on IPFS %s (%d bytes)", cid, len(data))
        return cid

    def get(self, address: str) -> bytes:
        return self._post("/cat", params={"arg": address}, address=address).content

    def pin(self, address: str) -> None:
        self._post("/pin/add", params={"arg": address}, address=address)
        logger.info("pinned document on IPFS %s", address)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, address: Optional[str] = None, **kwargs) -> httpx.Response:
        try:
            response = self._client.post(path, **kwargs)
        except httpx.TransportError as exc:
            raise TransientIOError(f"IPFS request {path} failed: {exc}") from exc

        if response.status_code < 400:
            return response

        message = _ipfs_error_message(response)
        details = {"status": response.status_code, "path": path}
        if address:
            details["address"] = address
        if response.status_code == 404 or "not found" in message.lower() or "no link" in message.lower():
            raise DocumentNotFoundError(message or "document not found", details)
        if response.status_code == 413 or "quota" in message.lower():
            raise QuotaExceededError(message or "quota exceeded", details)
        if response.status_code >= 500:
            raise TransientIOError(message or "IPFS server error", details)
        raise DocumentStoreError(message or "IPFS request rejected", details)


def _ipfs_error_message(response: httpx.Response) -> str:
    try:
        return str(response.json().get("Message", ""))
    except ValueError:
        return response.text[:200]

"""
Key-value document stores with optimistic revisions.

A document is ``{"_id": key, "_rev": "<n>-<hex>", "data": ...}``. Writing a
document that already exists requires the current ``_rev``; writing one that
doesn't exist must omit it.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Any, Optional


logger = logging.getLogger("rulemock.store")


class ConflictError(Exception):
    """Raised when a put carries a stale or unexpected revision."""


def _next_revision(current: Optional[str]) -> str:
    generation = 0
    if current:
        try:
            generation = int(current.split('-', 1)[0])
        except ValueError:
            generation = 0
    return f"{generation + 1}-{uuid.uuid4().hex[:12]}"


class DocumentStore(ABC):
    """Abstract base class for document stores."""

    @abstractmethod
    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        """Return every stored document keyed by id."""

    @abstractmethod
    def _write_all(self, documents: Dict[str, Dict[str, Any]]) -> None:
        """Persist every document."""

    def __init__(self):
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a document by key.

        Args:
            key: Document id

        Returns:
            Deep copy of the document, or None when absent
        """
        with self._lock:
            doc = self._read_all().get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create or overwrite a document.

        Args:
            doc: Document with ``_id``, ``data`` and, when updating, ``_rev``

        Returns:
            The stored document including its new ``_rev``

        Raises:
            ConflictError: If the revision doesn't match the stored one
        """
        key = doc.get('_id')
        if not key:
            raise ValueError("Document must have an _id")

        with self._lock:
            documents = self._read_all()
            existing = documents.get(key)
            given_rev = doc.get('_rev')

            if existing is None and given_rev:
                raise ConflictError(f"Document {key} does not exist, cannot update revision {given_rev}")
            if existing is not None and given_rev != existing.get('_rev'):
                raise ConflictError(
                    f"Revision conflict for {key}: expected {existing.get('_rev')}, got {given_rev}"
                )

            stored = {
                '_id': key,
                '_rev': _next_revision(existing.get('_rev') if existing else None),
                'data': copy.deepcopy(doc.get('data')),
            }
            documents[key] = stored
            self._write_all(documents)

        logger.debug(f"Stored document {key} at revision {stored['_rev']}")
        return copy.deepcopy(stored)

    def put_data(self, key: str, data: Any) -> Dict[str, Any]:
        """
        Write ``data`` under ``key``, creating or updating as needed.

        Reads the current revision and writes under one lock hold, so callers
        never handle ``_rev`` and concurrent writers never conflict.
        """
        with self._lock:
            current = self.get(key)
            doc = {'_id': key, 'data': data}
            if current is not None:
                doc['_rev'] = current['_rev']
            return self.put(doc)


class MemoryDocumentStore(DocumentStore):
    """In-process store; contents are lost when the process exits."""

    def __init__(self):
        super().__init__()
        self._documents: Dict[str, Dict[str, Any]] = {}

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        return self._documents

    def _write_all(self, documents: Dict[str, Dict[str, Any]]) -> None:
        self._documents = documents


class JsonFileDocumentStore(DocumentStore):
    """
    Store every document in a single JSON file.

    The file is re-read on each access so edits made by another process (or
    by hand) are picked up. Writes go to a temp file that replaces the
    original.

    Example:
        store = JsonFileDocumentStore('rulemock-db.json')
        store.put_data('mock_services_v1', [])
    """

    def __init__(self, file_path: str):
        super().__init__()
        self.file_path = Path(file_path)

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.file_path.exists():
            return {}

        with open(self.file_path, 'r', encoding='utf-8') as f:
            content = f.read()
        if not content.strip():
            return {}

        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError(f"Store file {self.file_path} must contain a JSON object")
        return data

    def _write_all(self, documents: Dict[str, Dict[str, Any]]) -> None:
        directory = self.file_path.parent
        directory.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(prefix='.rulemock-', suffix='.json', dir=str(directory))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(documents, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.file_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

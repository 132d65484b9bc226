"""Drive substitute backed by a JSON file.

Used when a user has not connected Google Drive. Items look like Drive's
file resources (``id``, ``name``, ``mimeType``, ``parents``...) with ids of
the form ``local_<hex>`` and ``isLocal: true``. File bodies are stored
base64-encoded in the same file, so this is for development and small
deployments only.
"""

import base64
import json
import logging
import os
import secrets
import threading
from datetime import datetime, timezone
from typing import List, Optional

from ..exceptions import DriveError
from ..services.format_utils import format_bytes
from .google_drive import FOLDER_MIME

logger = logging.getLogger(__name__)

# One lock for every store in the process; stores are small and writes rare.
_store_lock = threading.RLock()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _public(item: dict) -> dict:
    return {k: v for k, v in item.items() if k != "content"}


class LocalDriveClient:
    is_local = True

    def __init__(self, path: str):
        self.path = path

    # ----- Storage ----------------------------------------------------------

    def _load(self) -> dict:
        if not os.path.exists(self.path):
            return {"folders": {}, "files": {}, "created": _now()}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise DriveError(f"Local drive store unreadable: {exc}", operation="load") from exc
        data.setdefault("folders", {})
        data.setdefault("files", {})
        return data

    def _save(self, data: dict) -> None:
        data["updated"] = _now()
        tmp = f"{self.path}.tmp"
        try:
            directory = os.path.dirname(os.path.abspath(self.path))
            os.makedirs(directory, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(data, fh)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise DriveError(f"Local drive store not writable: {exc}", operation="save") from exc

    @staticmethod
    def _new_id() -> str:
        return f"local_{secrets.token_hex(8)}"

    # ----- Drive interface --------------------------------------------------

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> dict:
        with _store_lock:
            data = self._load()
            folder = {
                "id": self._new_id(),
                "name": name,
                "mimeType": FOLDER_MIME,
                "parents": [parent_id] if parent_id else [],
                "createdTime": _now(),
                "modifiedTime": _now(),
                "size": None,
                "isLocal": True,
            }
            data["folders"][folder["id"]] = folder
            self._save(data)
        logger.info("Local folder created", extra={"drive_id": folder["id"], "folder_name": name})
        return dict(folder)

    def list_files(self, parent_id: Optional[str] = None, page_size: int = 100) -> List[dict]:
        with _store_lock:
            data = self._load()
        items = [
            _public(item)
            for item in [*data["folders"].values(), *data["files"].values()]
            if not parent_id or parent_id in item.get("parents", [])
        ]
        items.sort(key=lambda i: i["name"].lower())
        return items[:page_size]

    def upload_file(
        self,
        name: str,
        content: bytes,
        mime_type: str = "application/octet-stream",
        parent_id: Optional[str] = None,
    ) -> dict:
        with _store_lock:
            data = self._load()
            item = {
                "id": self._new_id(),
                "name": name,
                "mimeType": mime_type,
                "size": len(content),
                "parents": [parent_id] if parent_id else [],
                "createdTime": _now(),
                "modifiedTime": _now(),
                "content": base64.b64encode(content).decode("ascii"),
                "isLocal": True,
            }
            data["files"][item["id"]] = item
            self._save(data)
        return _public(item)

    def download_file(self, file_id: str) -> bytes:
        with _store_lock:
            item = self._load()["files"].get(file_id)
        if item is None:
            raise DriveError(f"File not found: {file_id}", status=404, operation="download_file")
        return base64.b64decode(item.get("content", ""))

    def delete_file(self, file_id: str) -> bool:
        """Delete a file, or a folder together with everything under it."""
        with _store_lock:
            data = self._load()
            self._delete(data, file_id)
            self._save(data)
        return True

    def _delete(self, data: dict, item_id: str) -> None:
        if item_id in data["folders"]:
            for child_id, child in list(data["folders"].items()):
                if item_id in child.get("parents", []):
                    self._delete(data, child_id)
            for child_id, child in list(data["files"].items()):
                if item_id in child.get("parents", []):
                    del data["files"][child_id]
            del data["folders"][item_id]
        else:
            data["files"].pop(item_id, None)

    def share(self, file_id: str, email: str, role: str = "reader") -> dict:
        with _store_lock:
            data = self._load()
            folder = data["folders"].get(file_id)
            if folder is None:
                raise DriveError(f"Folder not found: {file_id}", status=404, operation="share")
            folder.setdefault("sharedWith", []).append({"email": email, "role": role, "addedDate": _now()})
            self._save(data)
        return {"id": self._new_id(), "type": "user", "role": role, "emailAddress": email}

    def get_file_info(self, file_id: str) -> dict:
        with _store_lock:
            data = self._load()
        item = data["folders"].get(file_id) or data["files"].get(file_id)
        if item is None:
            raise DriveError(f"File not found: {file_id}", status=404, operation="get_file_info")
        return _public(item)

    # ----- Local-only helpers -----------------------------------------------

    def search_files(self, query: str) -> List[dict]:
        needle = query.lower()
        with _store_lock:
            data = self._load()
        return [
            _public(item)
            for item in [*data["folders"].values(), *data["files"].values()]
            if needle in item["name"].lower()
        ]

    def get_stats(self) -> dict:
        with _store_lock:
            data = self._load()
        total = sum(f.get("size") or 0 for f in data["files"].values())
        return {
            "folders": len(data["folders"]),
            "files": len(data["files"]),
            "total_size": total,
            "total_size_formatted": format_bytes(total),
            "is_local": True,
        }

    def clear(self) -> None:
        with _store_lock:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass
        logger.info("Local drive store cleared", extra={"path": self.path})

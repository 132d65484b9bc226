"""Google Drive v3 REST client.

Drive calls go over ``requests``; the OAuth grant, code exchange and token
refresh go through google-auth-oauthlib and google-auth. Callers pass names
and bytes in and get Drive's JSON back. An expired access token is refreshed
once and the call retried; every other failure becomes a ``DriveError``
carrying the upstream status and the operation name.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from ..core.circuit_breaker import DRIVE, CircuitBreakerOpen, get_breaker
from ..core.config import settings
from ..exceptions import DriveError

logger = logging.getLogger(__name__)

DRIVE_API = "https://www.googleapis.com/drive/v3"
UPLOAD_API = "https://www.googleapis.com/upload/drive/v3"
AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"

SCOPES = ["https://www.googleapis.com/auth/drive.file"]
FOLDER_MIME = "application/vnd.google-apps.folder"
FILE_FIELDS = "id, name, mimeType, size, createdTime, modifiedTime, parents, webViewLink"


def expires_at(tokens: dict) -> Optional[datetime]:
    """Absolute expiry for an OAuth token response carrying ``expires_in``."""
    seconds = tokens.get("expires_in")
    if not seconds:
        return None
    return datetime.now(timezone.utc) + timedelta(seconds=int(seconds))


class GoogleDriveClient:
    """One user's Drive.

    Args:
        access_token: Current OAuth access token.
        refresh_token: Long-lived token used when the access token expires.
        on_token_refresh: Called with the new token dict after a refresh so
            the caller can persist it.
    """

    is_local = False

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        timeout: Optional[int] = None,
        on_token_refresh: Optional[Callable[[dict], None]] = None,
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.redirect_uri = redirect_uri or settings.google_redirect_uri
        self.timeout = timeout or settings.google_drive_timeout
        self.on_token_refresh = on_token_refresh

    # ----- OAuth ------------------------------------------------------------

    def _client_config(self) -> Dict[str, Any]:
        return {
            "web": {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "auth_uri": AUTH_URL,
                "token_uri": TOKEN_URL,
                "redirect_uris": [self.redirect_uri],
            }
        }

    def _flow(self, state: Optional[str] = None) -> Flow:
        # The code comes back in a later request, so there is no PKCE verifier to carry over.
        return Flow.from_client_config(
            self._client_config(),
            scopes=SCOPES,
            redirect_uri=self.redirect_uri,
            state=state,
            autogenerate_code_verifier=False,
        )

    def authorization_url(self, state: str = "") -> str:
        url, _ = self._flow(state or None).authorization_url(access_type="offline", prompt="consent")
        return url

    def exchange_code(self, code: str) -> dict:
        """Trade an authorization code for tokens."""
        try:
            token = self._flow().fetch_token(code=code)
        except OAuth2Error as exc:
            logger.warning("OAuth exchange_code failed", extra={"status_code": exc.status_code, "error": exc.error})
            raise DriveError("OAuth exchange_code failed", status=exc.status_code, operation="exchange_code") from exc
        except requests.exceptions.RequestException as exc:
            raise DriveError(f"Token endpoint unreachable: {exc}", operation="exchange_code") from exc

        tokens = dict(token)
        if isinstance(tokens.get("scope"), list):
            tokens["scope"] = " ".join(tokens["scope"])
        self.access_token = tokens.get("access_token")
        self.refresh_token = tokens.get("refresh_token") or self.refresh_token
        return tokens

    def credentials(self) -> Credentials:
        return Credentials(
            token=self.access_token,
            refresh_token=self.refresh_token,
            token_uri=TOKEN_URL,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=SCOPES,
        )

    def refresh_access_token(self) -> dict:
        """Get a new access token. Google omits the refresh token on refresh, so the old one is kept."""
        if not self.refresh_token:
            raise DriveError("No refresh token available", status=401, operation="refresh")

        credentials = self.credentials()
        try:
            credentials.refresh(Request())
        except RefreshError as exc:
            logger.warning("OAuth refresh rejected: %s", exc)
            raise DriveError("OAuth refresh failed", status=401, operation="refresh") from exc
        except TransportError as exc:
            raise DriveError(f"Token endpoint unreachable: {exc}", operation="refresh") from exc

        tokens: Dict[str, Any] = {
            "access_token": credentials.token,
            "refresh_token": credentials.refresh_token or self.refresh_token,
        }
        if credentials.expiry is not None:
            # google-auth keeps expiry as naive UTC
            remaining = credentials.expiry.replace(tzinfo=timezone.utc) - datetime.now(timezone.utc)
            tokens["expires_in"] = max(int(remaining.total_seconds()), 0)

        self.access_token = tokens["access_token"]
        self.refresh_token = tokens["refresh_token"]
        logger.info("Drive access token refreshed")
        if self.on_token_refresh is not None:
            self.on_token_refresh(tokens)
        return tokens

    def revoke(self) -> bool:
        """Revoke the grant at Google. Failures are logged and reported as False."""
        token = self.refresh_token or self.access_token
        if not token:
            return False
        try:
            response = requests.post(REVOKE_URL, params={"token": token}, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("Token revocation failed: %s", exc)
            return False
        if not response.ok:
            logger.warning("Token revocation rejected", extra={"status_code": response.status_code})
        return response.ok

    # ----- Requests ---------------------------------------------------------

    def _send(self, method: str, url: str, operation: str, headers: dict, **kwargs: Any) -> requests.Response:
        """One HTTP exchange. Network errors and 5xx answers count against the Drive breaker."""
        try:
            with get_breaker(DRIVE).guard((DriveError,)):
                try:
                    response = requests.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
                except requests.exceptions.RequestException as exc:
                    logger.warning("Drive %s failed: %s: %s", operation, type(exc).__name__, exc)
                    raise DriveError(f"Drive {operation} failed: {exc}", operation=operation) from exc
                if response.status_code >= 500:
                    raise self._http_error(response, operation)
        except CircuitBreakerOpen as exc:
            raise DriveError(
                f"Drive is temporarily unavailable, retry in {exc.retry_after:.0f}s",
                status=503,
                operation=operation,
            ) from exc
        return response

    @staticmethod
    def _http_error(response: requests.Response, operation: str) -> DriveError:
        logger.warning(
            "Drive %s returned %d", operation, response.status_code,
            extra={"operation": operation, "body": response.text[:200]},
        )
        return DriveError(
            f"Drive {operation} failed with HTTP {response.status_code}",
            status=response.status_code,
            operation=operation,
        )

    def _request(self, method: str, url: str, operation: str, **kwargs: Any) -> requests.Response:
        if not self.access_token:
            raise DriveError("Drive is not connected", status=401, operation=operation)

        extra_headers = dict(kwargs.pop("headers", {}) or {})
        for attempt in range(2):
            headers = {**extra_headers, "Authorization": f"Bearer {self.access_token}"}
            response = self._send(method, url, operation, headers, **kwargs)

            if response.status_code == 401 and attempt == 0 and self.refresh_token:
                logger.info("Drive %s got 401, refreshing token", operation)
                self.refresh_access_token()
                continue

            if not response.ok:
                raise self._http_error(response, operation)
            return response

        raise DriveError(f"Drive {operation} unauthorized", status=401, operation=operation)

    # ----- Files ------------------------------------------------------------

    def create_folder(self, name: str, parent_id: Optional[str] = None) -> dict:
        metadata: dict = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = self._request(
            "POST", f"{DRIVE_API}/files", "create_folder",
            params={"fields": "id, name, parents, webViewLink"},
            json=metadata,
        )
        folder = response.json()
        logger.info("Drive folder created", extra={"drive_id": folder.get("id"), "folder_name": name})
        return folder

    def list_files(self, parent_id: Optional[str] = None, page_size: int = 100) -> List[dict]:
        query = "trashed=false"
        if parent_id:
            query += f" and '{parent_id}' in parents"
        response = self._request(
            "GET", f"{DRIVE_API}/files", "list_files",
            params={"q": query, "pageSize": page_size, "fields": f"nextPageToken, files({FILE_FIELDS})"},
        )
        return response.json().get("files", [])

    def upload_file(
        self,
        name: str,
        content: bytes,
        mime_type: str = "application/octet-stream",
        parent_id: Optional[str] = None,
    ) -> dict:
        metadata: dict = {"name": name}
        if parent_id:
            metadata["parents"] = [parent_id]
        response = self._request(
            "POST", f"{UPLOAD_API}/files", "upload_file",
            params={"uploadType": "multipart", "fields": "id, name, size, mimeType, webViewLink"},
            files={
                "metadata": ("metadata", json.dumps(metadata), "application/json; charset=UTF-8"),
                "file": (name, content, mime_type),
            },
        )
        uploaded = response.json()
        logger.info("Drive file uploaded", extra={"drive_id": uploaded.get("id"), "size": len(content)})
        return uploaded

    def download_file(self, file_id: str) -> bytes:
        response = self._request("GET", f"{DRIVE_API}/files/{file_id}", "download_file", params={"alt": "media"})
        return response.content

    def delete_file(self, file_id: str) -> bool:
        self._request("DELETE", f"{DRIVE_API}/files/{file_id}", "delete_file")
        logger.info("Drive item deleted", extra={"drive_id": file_id})
        return True

    def share(self, file_id: str, email: str, role: str = "reader") -> dict:
        response = self._request(
            "POST", f"{DRIVE_API}/files/{file_id}/permissions", "share",
            params={"sendNotificationEmail": "true"},
            json={"type": "user", "role": role, "emailAddress": email},
        )
        return response.json()

    def get_file_info(self, file_id: str) -> dict:
        response = self._request(
            "GET", f"{DRIVE_API}/files/{file_id}", "get_file_info",
            params={"fields": FILE_FIELDS},
        )
        return response.json()

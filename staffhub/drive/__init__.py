"""Google Drive client and its local JSON-file substitute."""

from .google_drive import GoogleDriveClient
from .local_drive import LocalDriveClient
from .selector import DriveClient, drive_for_user, store_credentials, get_credentials, delete_credentials

__all__ = [
    "GoogleDriveClient",
    "LocalDriveClient",
    "DriveClient",
    "drive_for_user",
    "store_credentials",
    "get_credentials",
    "delete_credentials",
]

"""
Upload path helpers
"""
import os
from typing import Tuple

from ..core.config import settings


def get_upload_paths() -> Tuple[str, str]:
    """
    Returns the base directory and the relative uploads folder

    Returns:
        Tuple[str, str]: (base_dir, relative_path)
        - base_dir: absolute base directory (/app in Docker)
        - relative_path: folder name used in stored URLs
    """
    return settings.upload_base_dir, "uploads"


def get_relative_upload_path(file_type: str, filename: str) -> str:
    """
    Builds the relative path of an uploaded file

    Args:
        file_type: one of FileTypes
        filename: file name

    Returns:
        str: relative path, also used as the URL path
    """
    _, uploads_dir = get_upload_paths()
    return "/".join([uploads_dir, file_type, filename])


def ensure_upload_directory(file_type: str) -> str:
    """Creates the upload directory for a file type and returns its absolute path"""
    base_dir, uploads_dir = get_upload_paths()
    full_dir = os.path.join(base_dir, uploads_dir, file_type)
    os.makedirs(full_dir, exist_ok=True)
    return full_dir


class FileTypes:
    WARNING_SNAPSHOTS = "warnings"

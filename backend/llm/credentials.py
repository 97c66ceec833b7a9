"""API key loading for the hosted backend."""

from __future__ import annotations

from pathlib import Path

from backend.errors import CredentialError


def read_credential(path: str | Path) -> str:
    """Return the first line of the key file, stripped.

    The file is read on every call; keys are never cached or logged.
    """

    key_path = Path(path)
    try:
        with key_path.open("r", encoding="utf-8") as fh:
            first_line = fh.readline()
    except FileNotFoundError as exc:
        raise CredentialError(f"API key file '{key_path}' not found.") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise CredentialError(f"API key file '{key_path}' could not be read: {exc}") from exc
    key = first_line.strip()
    if not key:
        raise CredentialError(f"API key file '{key_path}' is empty.")
    return key


__all__ = ["read_credential"]

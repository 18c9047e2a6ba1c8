"""
HTTP-01 challenge publisher.

Writes key authorizations where the authority can fetch them at
http://<domain>/.well-known/acme-challenge/<token>. Each token has its own
file, so publishing or removing one never touches another.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

from config import settings

logger = logging.getLogger(__name__)

# ACME tokens are base64url without padding
_TOKEN_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class InvalidChallengeTokenError(ValueError):
    """Token contains characters outside the base64url alphabet."""


def is_valid_token(token: str) -> bool:
    return bool(token) and _TOKEN_RE.match(token) is not None


def _normalize_token(token) -> str:
    # The acme library may hand tokens over as bytes
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    if not is_valid_token(token):
        raise InvalidChallengeTokenError(f"Invalid challenge token: {token!r}")
    return token


class ChallengePublisher:
    """File-backed store of published challenge artifacts."""

    def __init__(self, challenge_dir: Optional[str] = None):
        self.challenge_dir = Path(challenge_dir or settings.acme_challenge_dir)

    def _path_for(self, token: str) -> Path:
        return self.challenge_dir / token

    async def publish(self, token, key_authorization: str) -> Path:
        """
        Make a key authorization available for a token.

        The file is written to a temporary name and renamed into place
        so the authority never reads a partial artifact.

        Returns:
            Path of the published artifact
        """
        token = _normalize_token(token)
        self.challenge_dir.mkdir(parents=True, exist_ok=True)

        path = self._path_for(token)
        tmp_path = path.with_name(f".{token}.tmp")
        tmp_path.write_text(key_authorization)
        os.replace(tmp_path, path)

        logger.info(f"Published challenge artifact {path}")
        return path

    async def remove(self, token) -> None:
        """Remove a published artifact. Never raises."""
        try:
            token = _normalize_token(token)
            path = self._path_for(token)
            if path.exists():
                path.unlink()
                logger.info(f"Removed challenge artifact {path}")
        except (OSError, InvalidChallengeTokenError) as e:
            logger.warning(f"Failed to remove challenge artifact for token {token!r}: {e}")

    async def read(self, token: str) -> Optional[str]:
        """Return the key authorization for a token, or None if unknown or invalid."""
        if not is_valid_token(token):
            return None
        path = self._path_for(token)
        try:
            return path.read_text()
        except FileNotFoundError:
            return None


# Singleton instance
_challenge_publisher: ChallengePublisher | None = None


def get_challenge_publisher() -> ChallengePublisher:
    """Get the global challenge publisher instance."""
    global _challenge_publisher
    if _challenge_publisher is None:
        _challenge_publisher = ChallengePublisher()
    return _challenge_publisher

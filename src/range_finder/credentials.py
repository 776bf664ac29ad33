"""
Credential store backed by a .env file.

The session token, CSRF token and issuance time are always written together
in one atomic file replace, so a crash never leaves a half-updated pair.
"""

import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from dotenv import dotenv_values

from .enums import ErrorCode
from .exceptions import PersistenceError
from .models import AuthSession

SESSION_KEY = "ORANGE_CARRIER_SESSION"
CSRF_KEY = "X_CSRF_TOKEN"
ISSUED_AT_KEY = "LAST_TOKEN_REFRESH"

CREDENTIAL_KEYS = (SESSION_KEY, CSRF_KEY, ISSUED_AT_KEY)


def _parse_issued_at(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class EnvCredentialStore:
    """Reads and atomically rewrites the credential keys of a .env file."""

    def __init__(self, env_file: Union[str, Path] = ".env", update_environ: bool = True) -> None:
        self._env_file = Path(env_file)
        self._update_environ = update_environ

    @property
    def env_file(self) -> Path:
        return self._env_file

    def load(self) -> Optional[AuthSession]:
        """
        Load the persisted credential.

        Values in the file win over the process environment.

        Returns:
            The AuthSession, or None when either token is missing
        """
        values: dict[str, Optional[str]] = {}
        if self._env_file.exists():
            values = dotenv_values(self._env_file)

        def lookup(key: str) -> Optional[str]:
            return values.get(key) or os.environ.get(key) or None

        session_token = lookup(SESSION_KEY)
        csrf_token = lookup(CSRF_KEY)
        if not session_token or not csrf_token:
            return None

        return AuthSession(
            session_token=session_token,
            csrf_token=csrf_token,
            issued_at_ms=_parse_issued_at(lookup(ISSUED_AT_KEY)),
        )

    def save(self, session: AuthSession) -> None:
        """
        Persist the credential, replacing the three keys in one write.

        Raises:
            PersistenceError: If the file could not be written
        """
        updates = {
            SESSION_KEY: session.session_token,
            CSRF_KEY: session.csrf_token,
            ISSUED_AT_KEY: "" if session.issued_at_ms is None else str(session.issued_at_ms),
        }

        try:
            lines: list[str] = []
            if self._env_file.exists():
                lines = self._env_file.read_text(encoding="utf-8").splitlines()

            written: set[str] = set()
            output: list[str] = []
            for line in lines:
                key = line.split("=", 1)[0].strip()
                if key.startswith("export "):
                    key = key[len("export "):].strip()
                if key in updates and "=" in line:
                    if key not in written:
                        output.append(f"{key}={updates[key]}")
                        written.add(key)
                    continue
                output.append(line)

            for key in CREDENTIAL_KEYS:
                if key not in written:
                    output.append(f"{key}={updates[key]}")

            directory = self._env_file.parent
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".env.", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write("\n".join(output) + "\n")
                os.replace(tmp_path, self._env_file)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise PersistenceError(
                code=ErrorCode.PERSIST_FAILED.value,
                message=f"Could not write credentials to {self._env_file}: {e}",
                details={"env_file": str(self._env_file)},
            ) from e

        if self._update_environ:
            os.environ.update(updates)

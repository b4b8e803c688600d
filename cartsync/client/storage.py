# cartsync/client/storage.py
import os
import tempfile
from pathlib import Path

from cartsync.utils.settings import CLIENT_STORAGE_DIR


class LocalStore:
    """Small key -> JSON text store, one file per key.

    Errors (OSError) go to the caller; SessionContext and CartSync decide
    what a failed read or write means for them.
    """

    def __init__(self, directory: str | os.PathLike | None = None):
        self.directory = Path(directory or CLIENT_STORAGE_DIR)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read_text(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def write_text(self, key: str, text: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        # zapis przez plik tymczasowy, zeby nie zostawic polowy jsona
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp, self._path(key))
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

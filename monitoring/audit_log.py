import json
import logging
from pathlib import Path
from typing import IO, Optional, Union


logger = logging.getLogger(__name__)


class OrderAuditLog:
    """
    Append-only record of raw order responses.

    Entries are written as they arrive; ``close`` terminates the JSON array so
    the file parses as a list once the process exits.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._fh: Optional[IO[str]] = None
        self._count = 0

    @property
    def count(self) -> int:
        return self._count

    def open(self) -> None:
        if self._fh is not None:
            return
        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = self.path.open('w', encoding='utf-8')
        self._fh.write('[')
        self._fh.flush()
        self._count = 0

    def record(self, body: str) -> None:
        if self._fh is None:
            self.open()
        # valid JSON bodies are kept byte for byte; anything else becomes a string entry
        entry = body.strip()
        try:
            json.loads(entry)
        except ValueError:
            entry = json.dumps(body)
        separator = ',\n\t' if self._count else '\n\t'
        self._fh.write(separator + entry)
        self._fh.flush()
        self._count += 1

    def close(self) -> None:
        if self._fh is None:
            return
        try:
            self._fh.write('\n]\n')
        finally:
            self._fh.close()
            self._fh = None
        logger.info("Audit log closed with %s order responses at %s", self._count, self.path)

    def __enter__(self) -> 'OrderAuditLog':
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

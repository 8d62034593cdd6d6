from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional

from ui_harness.constants import ATTEMPT_FOLDER_PREFIX, DEFAULT_DUMPS_DIRECTORY, TEST_NAME_FILENAME
from ui_harness.schemas import DumpAttempt, DumpSummary


class DumpStore:
    """Read access to the failure dump folders below one dumps directory."""

    def __init__(self, root: Optional[Path] = None, base_url: str = "/dumps") -> None:
        resolved_root = root or DEFAULT_DUMPS_DIRECTORY
        self._root = Path(resolved_root).resolve()
        self._base_url = base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self._root).as_posix()

    def url(self, path: Path) -> str:
        return f"{self._base_url}/{self.relative(path)}"

    def resolve(self, relative_path: str) -> Optional[Path]:
        """Return the file for a relative path, or None when it is missing or outside the root."""
        target = (self._root / relative_path).resolve()
        if target != self._root and self._root not in target.parents:
            return None
        if not target.is_file():
            return None
        return target

    def summarize(self, folder: Path) -> DumpSummary:
        name_file = folder / TEST_NAME_FILENAME
        test_name = name_file.read_text(encoding="utf-8") if name_file.is_file() else None
        attempts: List[DumpAttempt] = []
        for child in folder.iterdir():
            if not child.is_dir() or not child.name.startswith(ATTEMPT_FOLDER_PREFIX):
                continue
            try:
                index = int(child.name[len(ATTEMPT_FOLDER_PREFIX):])
            except ValueError:
                continue
            files = sorted(self.relative(path) for path in child.rglob("*") if path.is_file())
            attempts.append(DumpAttempt(index=index, files=files))
        attempts.sort(key=lambda item: item.index)
        return DumpSummary(folder=folder.name, test_name=test_name, attempts=attempts)

    def list_dumps(self) -> List[DumpSummary]:
        if not self._root.exists():
            return []
        folders = sorted(path for path in self._root.iterdir() if path.is_dir())
        return [self.summarize(folder) for folder in folders]

    def get_dump(self, folder: str) -> Optional[DumpSummary]:
        target = (self._root / folder).resolve()
        if target.parent != self._root or not target.is_dir():
            return None
        return self.summarize(target)

    def purge(self, folder: str) -> bool:
        """Remove one dump folder."""
        target = (self._root / folder).resolve()
        if target.parent != self._root or not target.exists():
            return False
        shutil.rmtree(target, ignore_errors=True)
        return True


_dump_store: Optional[DumpStore] = None


def get_dump_store() -> DumpStore:
    global _dump_store
    if _dump_store is None:
        _dump_store = DumpStore()
    return _dump_store

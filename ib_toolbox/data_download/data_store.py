from __future__ import annotations

import io
import os
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

from ib_toolbox.exceptions import MissingZipEntryError

from .lean_schema import csv_entry_for_archive


class LeanDataStore:
    """Filesystem helper for reading and writing Lean trade archives."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    # ------------------------------------------------------------------ reads
    def relative_path(self, path: Union[str, Path]) -> str:
        """Return ``path`` relative to the store root using ``/`` separators."""

        try:
            relative = os.path.relpath(Path(path), self._root)
        except ValueError:
            # Different drive on Windows.
            return Path(path).as_posix()
        return Path(relative).as_posix()

    def read_archive_lines(self, archive_path: Path, entry_name: str) -> Tuple[str, List[str]]:
        """
        Return the resolved entry name and the text lines of ``entry_name``
        inside ``archive_path``.

        The entry is matched exactly first, then case-insensitively against
        either the full entry name or its final path component.
        """

        with zipfile.ZipFile(archive_path, "r") as archive:
            resolved = self._resolve_entry(archive, entry_name)
            if resolved is None:
                raise MissingZipEntryError(
                    f"Entry '{entry_name}' not found in archive '{archive_path}'"
                )
            with archive.open(resolved, "r") as handle:
                text = io.TextIOWrapper(handle, encoding="utf-8-sig", errors="replace")
                return resolved, text.read().splitlines()

    def read_text_lines(self, path: Path) -> List[str]:
        """Return the lines of a plain-text data file."""

        with open(path, "r", encoding="utf-8-sig", errors="replace") as handle:
            return handle.read().splitlines()

    # ------------------------------------------------------------------ writes
    def write_file(
        self,
        directory: Path,
        filename: str,
        content: str,
        *,
        as_zip: bool = True,
    ) -> str:
        """
        Persist ``content`` as ``directory/filename`` and return its relative path.

        Zip archives hold a single CSV entry named after the archive stem. The
        payload is staged in a hidden temp file in the target directory and
        moved into place, so readers never see a partial archive.
        """

        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        target_path = directory / filename

        temp_file = self._create_temp_file(directory, suffix=".zip" if as_zip else ".csv")
        try:
            if as_zip:
                with zipfile.ZipFile(temp_file, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                    archive.writestr(csv_entry_for_archive(filename), content)
            else:
                with open(temp_file, "w", encoding="utf-8", newline="") as handle:
                    handle.write(content)
            os.replace(temp_file, target_path)
        finally:
            if os.path.exists(temp_file):
                os.remove(temp_file)

        return self.relative_path(target_path)

    # ----------------------------------------------------------------- helpers
    def _create_temp_file(self, directory: Path, suffix: str) -> str:
        fd, temp_path = tempfile.mkstemp(dir=directory, suffix=suffix, prefix=".tmp-lean-")
        os.close(fd)
        return temp_path

    @staticmethod
    def _resolve_entry(archive: zipfile.ZipFile, entry_name: str) -> Optional[str]:
        names = archive.namelist()
        if entry_name in names:
            return entry_name
        wanted = entry_name.lower()
        for name in names:
            if name.lower() == wanted or name.rsplit("/", 1)[-1].lower() == wanted:
                return name
        return None

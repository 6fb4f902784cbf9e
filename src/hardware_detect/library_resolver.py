"""
lxc-gpu-passthrough Hardware Detection - Library Resolver

Locates the NVIDIA user-space libraries a container needs on the host and
follows symbolic links to the real files that must be bind-mounted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LibraryMapping:
    """A host library file and where it appears inside the container."""

    name: str                   # e.g., "libnvidia-ml.so.1"
    host_path: Path             # real file after following links
    container_path: Path        # e.g., /usr/lib/x86_64-linux-gnu/libnvidia-ml.so.1
    link_path: Optional[Path] = None  # the symlink that was followed, if any

    @property
    def mount_target(self) -> str:
        """Container path relative to the container root, as lxc.mount.entry wants it."""
        return str(self.container_path).lstrip("/")


class LibraryResolver:
    """Resolves required library names against a host library directory."""

    def __init__(self, settings):
        self.host_dir = Path(settings.host_library_dir)
        self.container_dir = Path(settings.container_library_dir)
        self.warnings: List[str] = []

    def find(self, name: str) -> Optional[Path]:
        """First match for a library name: exact file, else lexically first name*."""
        exact = self.host_dir / name
        if exact.exists() or exact.is_symlink():
            return exact
        matches = sorted(self.host_dir.glob(f"{name}*"))
        return matches[0] if matches else None

    def resolve_one(self, name: str) -> Optional[LibraryMapping]:
        """
        Resolve a single library name.

        Returns:
            LibraryMapping or None when no usable file exists.
        """
        found = self.find(name)
        if found is None:
            self._warn(f"Library {name} not found in {self.host_dir}")
            return None

        link_path = None
        real = found
        if found.is_symlink():
            link_path = found
            try:
                real = found.resolve(strict=True)
            except (OSError, RuntimeError) as e:
                self._warn(f"Library {name}: link {found} has no usable target ({e})")
                return None
            logger.debug(f"{found} -> {real}")

        if not real.is_file():
            self._warn(f"Library {name}: {real} is not a regular file")
            return None

        return LibraryMapping(
            name=name,
            host_path=real,
            container_path=self.container_dir / name,
            link_path=link_path,
        )

    def resolve(self, names: Iterable[str]) -> List[LibraryMapping]:
        """
        Resolve every library name, skipping (with a warning) the ones
        that cannot be found.

        Args:
            names: Library names (e.g., {"libcuda.so.1"})

        Returns:
            Mappings sorted by library name.
        """
        self.warnings = []
        mappings = []
        for name in sorted(set(names)):
            mapping = self.resolve_one(name)
            if mapping is not None:
                logger.info(f"Library {name}: {mapping.host_path}")
                mappings.append(mapping)

        if self.warnings:
            logger.warning(
                f"{len(self.warnings)} librar{'y' if len(self.warnings) == 1 else 'ies'} "
                "unresolved; passthrough may have reduced functionality"
            )
        return mappings

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(message)

"""
Config Rewriter - Idempotent rewrite of a container's passthrough block.

Every mutation follows the same order: back up the document, strip all
managed lines, (for apply) append a freshly rendered block, then persist
with write-then-rename.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from common.exceptions import ConfigWriteFailure, ContainerNotFoundError
from common.decorators import timed
from common.logging_config import log_success
from hardware_detect.device_inventory import HostDeviceInventory, nvidia_majors, require_inventory
from hardware_detect.library_resolver import LibraryMapping
from utils.atomic_write import timestamped_backup

from ..templates.loader import BLOCK_TEMPLATE, TemplateLoader, get_template_loader
from .config_document import ConfigDocument
from .pct_host import ContainerHost

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Result of an apply or strip."""
    ctid: str
    backup_path: Path
    document: ConfigDocument
    managed_lines: List[str] = field(default_factory=list)
    removed_lines: List[str] = field(default_factory=list)
    changed: bool = True


@dataclass(frozen=True)
class _DeviceLine:
    index: int
    path: str


@dataclass(frozen=True)
class _BridgeMount:
    source: str
    target: str


class ConfigRewriter:
    """
    Applies and removes the passthrough block in container configurations.
    """

    def __init__(self, host: ContainerHost, settings, templates: Optional[TemplateLoader] = None):
        self.host = host
        self.settings = settings
        self.templates = templates or get_template_loader()

    def load(self, ctid: str, majors: Iterable[int] = ()) -> ConfigDocument:
        """
        Read and parse a container's configuration document.

        Cgroup rules for the host's NVIDIA majors and for ``majors`` count as
        managed wherever they appear.
        """
        try:
            text = self.host.read_config(ctid)
        except ContainerNotFoundError:
            raise
        except OSError as e:
            raise ConfigWriteFailure(ctid, "read", cause=e)
        vendor_majors = set(nvidia_majors(self.settings)) | set(majors)
        return ConfigDocument.parse(text, marker=self.settings.marker, vendor_majors=vendor_majors)

    def backup(self, ctid: str) -> Path:
        """
        Copy the configuration document into the backup directory.

        Raises:
            ConfigWriteFailure: If the copy cannot be written
        """
        try:
            path = timestamped_backup(
                self.host.config_path(ctid),
                self.settings.backup_dir,
                stem=f"{ctid}.conf",
            )
        except OSError as e:
            raise ConfigWriteFailure(ctid, "back up", cause=e)
        logger.info(f"Backup saved: {path}")
        return path

    def render_block(
        self,
        inventory: HostDeviceInventory,
        mappings: Sequence[LibraryMapping],
        document: Optional[ConfigDocument] = None,
    ) -> List[str]:
        """
        Render the managed block lines for an inventory and library set.

        Device lines are numbered after the highest unmanaged dev<N> of the
        document so they never collide with other devices.
        """
        start = document.next_device_index() if document is not None else 0
        devices = [
            _DeviceLine(index=start + i, path=device.path)
            for i, device in enumerate(inventory)
        ]
        bridge = _BridgeMount(
            source=self.settings.bridge_binary,
            target=self.settings.bridge_binary.lstrip("/"),
        )

        text = self.templates.render(
            BLOCK_TEMPLATE,
            marker=self.settings.marker,
            cgroup_key=self.settings.cgroup_key,
            majors=inventory.majors,
            devices=devices,
            mode=self.settings.device_mode,
            bridge=bridge,
            libraries=list(mappings),
        )
        return [line for line in text.splitlines() if line.strip()]

    @timed
    def apply(
        self,
        ctid: str,
        inventory: HostDeviceInventory,
        mappings: Sequence[LibraryMapping],
    ) -> ApplyResult:
        """
        Replace the container's passthrough block.

        Args:
            ctid: Container ID
            inventory: Host device nodes to expose
            mappings: Resolved libraries to bind-mount

        Returns:
            ApplyResult with the backup path and the written document

        Raises:
            EmptyInventoryError: No device nodes to expose (nothing is touched)
            ConfigWriteFailure: Backup or write failed
        """
        require_inventory(inventory, self.settings.device_paths)

        current = self.load(ctid, inventory.majors)
        backup_path = self.backup(ctid)

        block = self.render_block(inventory, mappings, current)
        try:
            updated = current.with_block(block)
        except ValueError as e:
            raise ConfigWriteFailure(ctid, "render", cause=e)

        result = ApplyResult(
            ctid=ctid,
            backup_path=backup_path,
            document=updated,
            managed_lines=block,
            removed_lines=[line.text for line in current.managed_lines],
        )
        result.changed = self._persist(ctid, current, updated)

        log_success(
            logger,
            f"Passthrough block written for CT {ctid}: "
            f"{len(inventory)} device(s), {len(mappings)} librar{'y' if len(mappings) == 1 else 'ies'}",
        )
        return result

    @timed
    def strip(self, ctid: str) -> ApplyResult:
        """
        Remove the passthrough block without adding a new one.

        Raises:
            ConfigWriteFailure: Backup or write failed
        """
        current = self.load(ctid)
        backup_path = self.backup(ctid)

        updated = current.stripped()
        result = ApplyResult(
            ctid=ctid,
            backup_path=backup_path,
            document=updated,
            removed_lines=[line.text for line in current.managed_lines],
        )
        result.changed = self._persist(ctid, current, updated)

        if result.removed_lines:
            log_success(logger, f"Removed {len(result.removed_lines)} passthrough line(s) from CT {ctid}")
        else:
            logger.info(f"CT {ctid} has no passthrough configuration")
        return result

    def _persist(self, ctid: str, current: ConfigDocument, updated: ConfigDocument) -> bool:
        """Write the document if it changed. Returns True if written."""
        text = updated.render()
        if text == current.render():
            logger.info(f"Configuration of CT {ctid} already up to date")
            return False
        try:
            self.host.write_config(ctid, text)
        except OSError as e:
            raise ConfigWriteFailure(ctid, "write", cause=e)
        logger.debug(f"Wrote {self.host.config_path(ctid)}")
        return True

"""
Container Configuration Document

Line-oriented model of a Proxmox LXC configuration file. Each line of the
main section is tagged as either managed (owned by GPU passthrough) or
unmanaged; snapshot sections (``[name]`` onwards) are never managed.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import Collection, List, Sequence, Tuple

DEFAULT_MARKER = "# NVIDIA GPU passthrough (managed by lxc-gpu-passthrough)"
DEFAULT_VENDOR_MAJORS = (195,)

CGROUP_RE = re.compile(r"^\s*lxc\.cgroup2?\.devices\.allow\s*[:=]\s*[abc]?\s*(\d+|\*)?")
DEVICE_RE = re.compile(r"^\s*dev(\d+)\s*:\s*([^,\s]+)")
MOUNT_RE = re.compile(r"^\s*lxc\.mount\.entry\s*[:=]\s*(\S+)")
SECTION_RE = re.compile(r"^\s*\[[^\]]+\]\s*$")
VENDOR_BASENAME_RE = re.compile(r"^(nvidia-|libnvidia-|libcuda|libnvcuvid|libnvoptix)|_nvidia\.so")

VENDOR_DEVICE_PREFIX = "/dev/nvidia"


class LineKind(Enum):
    """Classification of a configuration line."""
    UNMANAGED = "unmanaged"
    SECTION = "section"
    MARKER = "marker"
    CGROUP_RULE = "cgroup_rule"
    DEVICE = "device"
    MOUNT_ENTRY = "mount_entry"

    @property
    def is_managed(self) -> bool:
        return self not in (LineKind.UNMANAGED, LineKind.SECTION)


@dataclass(frozen=True)
class ConfigLine:
    """One line of the document, without its newline."""
    text: str
    kind: LineKind = LineKind.UNMANAGED

    @property
    def is_managed(self) -> bool:
        return self.kind.is_managed


def is_vendor_source(source: str) -> bool:
    """True if a bind-mount source is an NVIDIA device node or vendor file."""
    if source.startswith(VENDOR_DEVICE_PREFIX):
        return True
    return bool(VENDOR_BASENAME_RE.search(os.path.basename(source.rstrip("/"))))


def classify(
    text: str,
    marker: str = DEFAULT_MARKER,
    vendor_majors: Collection[int] = DEFAULT_VENDOR_MAJORS,
    in_block: bool = False,
) -> LineKind:
    """
    Classify a single main-section line.

    A cgroup rule is managed when it sits inside the managed block or
    allows one of ``vendor_majors``; rules for other devices belong to
    the user.
    """
    stripped = text.strip()
    if not stripped:
        return LineKind.UNMANAGED
    if stripped == marker.strip():
        return LineKind.MARKER
    if SECTION_RE.match(text):
        return LineKind.SECTION
    match = CGROUP_RE.match(text)
    if match:
        major = match.group(1)
        if in_block or (major and major.isdigit() and int(major) in vendor_majors):
            return LineKind.CGROUP_RULE
        return LineKind.UNMANAGED

    match = DEVICE_RE.match(text)
    if match and match.group(2).startswith(VENDOR_DEVICE_PREFIX):
        return LineKind.DEVICE

    match = MOUNT_RE.match(text)
    if match and is_vendor_source(match.group(1)):
        return LineKind.MOUNT_ENTRY

    return LineKind.UNMANAGED


@dataclass(frozen=True)
class ConfigDocument:
    """Ordered, tagged lines of a container configuration file."""

    lines: Tuple[ConfigLine, ...] = ()
    marker: str = DEFAULT_MARKER

    @classmethod
    def parse(
        cls,
        text: str,
        marker: str = DEFAULT_MARKER,
        vendor_majors: Collection[int] = DEFAULT_VENDOR_MAJORS,
    ) -> "ConfigDocument":
        """
        Parse configuration text into tagged lines.

        The managed block runs from the marker to the first unmanaged line.
        """
        lines: List[ConfigLine] = []
        in_snapshot = False
        in_block = False
        for raw in text.splitlines():
            if in_snapshot:
                lines.append(ConfigLine(raw, LineKind.UNMANAGED))
                continue
            kind = classify(raw, marker, vendor_majors, in_block)
            if kind == LineKind.SECTION:
                in_snapshot = True
            if kind == LineKind.MARKER:
                in_block = True
            elif not kind.is_managed:
                in_block = False
            lines.append(ConfigLine(raw, kind))
        return cls(tuple(lines), marker)

    def render(self) -> str:
        """Serialize back to text, always newline-terminated."""
        if not self.lines:
            return ""
        return "\n".join(line.text for line in self.lines) + "\n"

    @property
    def managed_lines(self) -> List[ConfigLine]:
        return [line for line in self.lines if line.is_managed]

    @property
    def has_managed_block(self) -> bool:
        return any(line.is_managed for line in self.lines)

    @property
    def main_section_end(self) -> int:
        """Index of the first snapshot section header, or len(lines)."""
        for i, line in enumerate(self.lines):
            if line.kind == LineKind.SECTION:
                return i
        return len(self.lines)

    def stripped(self) -> "ConfigDocument":
        """Copy of the document with every managed line removed."""
        return ConfigDocument(
            tuple(line for line in self.lines if not line.is_managed),
            self.marker,
        )

    def with_block(self, block: Sequence[str]) -> "ConfigDocument":
        """
        Strip managed lines, then insert a new block at the end of the
        main section.

        Raises:
            ValueError: If a block line would not be recognized as managed
        """
        block_lines = []
        for text in block:
            kind = classify(text, self.marker, in_block=True)
            if not kind.is_managed:
                raise ValueError(f"Block line would not be managed: {text!r}")
            block_lines.append(ConfigLine(text, kind))

        base = self.stripped()
        end = base.main_section_end
        lines = list(base.lines[:end]) + block_lines + list(base.lines[end:])
        return ConfigDocument(tuple(lines), self.marker)

    def next_device_index(self) -> int:
        """First dev<N> index above every unmanaged device line in the main section."""
        highest = -1
        for line in self.lines[:self.main_section_end]:
            if line.is_managed:
                continue
            match = DEVICE_RE.match(line.text)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    def mounted_container_paths(self) -> List[str]:
        """Absolute container paths bind-mounted by managed mount entries."""
        paths = []
        for line in self.managed_lines:
            if line.kind != LineKind.MOUNT_ENTRY:
                continue
            match = MOUNT_RE.match(line.text)
            rest = line.text[match.end():].split()
            if rest:
                paths.append("/" + rest[0].lstrip("/"))
        return paths

    def device_paths(self) -> List[str]:
        """Host device paths named by managed dev<N> lines."""
        paths = []
        for line in self.managed_lines:
            if line.kind == LineKind.DEVICE:
                match = DEVICE_RE.match(line.text)
                if match:
                    paths.append(match.group(2))
        return paths


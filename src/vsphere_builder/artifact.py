"""
Build result: the VM (or template) that was produced plus any exported files.
"""

import logging
import os
import shutil
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from vsphere_builder.config import ContentLibraryConfig, LocationConfig
from vsphere_builder.pipeline import (
    STATE_ISO_PATH,
    STATE_METADATA,
    STATE_SOURCE_IMAGE_URL,
    STATE_SOURCE_TEMPLATE,
    STATE_UPLOADED_FLOPPY_PATH,
)

logger = logging.getLogger(__name__)

BUILDER_ID = "vsphere-builder.vsphere"


@dataclass
class OutputConfig:
    output_directory: str = ""

    def list_files(self) -> List[str]:
        """Every file below the output directory; none when it does not exist."""
        if not self.output_directory or not os.path.isdir(self.output_directory):
            return []
        files = []
        for root, _, names in os.walk(self.output_directory):
            for name in sorted(names):
                files.append(os.path.join(root, name))
        return sorted(files)


def build_labels(
    state_data: Mapping[str, Any],
    location: LocationConfig,
    content_library: Optional[ContentLibraryConfig] = None,
) -> Dict[str, str]:
    """Artifact labels; later sources overwrite earlier ones."""
    labels: Dict[str, str] = {}
    floppy = state_data.get(STATE_UPLOADED_FLOPPY_PATH)
    if floppy:
        labels["uploaded_floppy_path"] = floppy
    labels.update(state_data.get(STATE_METADATA) or {})
    if location.cluster:
        labels["cluster"] = location.cluster
    if location.host:
        labels["host"] = location.host
    if content_library is not None:
        labels["content_library_destination"] = f"{content_library.library}/{content_library.name}"
    source_url = state_data.get(STATE_SOURCE_IMAGE_URL)
    if source_url:
        labels["source_image_url"] = source_url
    return labels


@dataclass(frozen=True)
class Artifact:
    name: str
    datacenter: str
    location: LocationConfig
    vm: Any
    content_library: Optional[ContentLibraryConfig] = None
    labels: Dict[str, str] = field(default_factory=dict)
    files: Tuple[str, ...] = ()
    state_data: Dict[str, Any] = field(default_factory=dict)
    output_directory: str = ""

    builder_id = BUILDER_ID

    @property
    def id(self) -> str:
        return self.name

    @property
    def source_id(self) -> str:
        """Template the build was cloned from, else the boot ISO."""
        return self.state_data.get(STATE_SOURCE_TEMPLATE) or self.state_data.get(STATE_ISO_PATH) or ""

    def state(self, name: str) -> Any:
        return self.state_data.get(name)

    def destroy(self) -> None:
        """Remove exported files, then the VM itself."""
        if self.output_directory:
            try:
                shutil.rmtree(self.output_directory)
            except OSError as e:
                logger.warning(f"Failed to remove output directory: {e}")
        self.vm.destroy()

    def __str__(self) -> str:
        return self.name

    @classmethod
    def from_state(
        cls,
        name: str,
        datacenter: str,
        location: LocationConfig,
        vm: Any,
        state_data: Mapping[str, Any],
        content_library: Optional[ContentLibraryConfig] = None,
        output: Optional[OutputConfig] = None,
    ) -> "Artifact":
        return cls(
            name=name,
            datacenter=datacenter,
            location=location,
            vm=vm,
            content_library=content_library,
            labels=build_labels(state_data, location, content_library),
            files=tuple(output.list_files()) if output is not None else (),
            state_data=dict(state_data),
            output_directory=output.output_directory if output is not None else "",
        )

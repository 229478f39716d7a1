"""YAML manifest reading and writing for the export directory layout."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Type, TypeVar

import yaml
from loguru import logger
from pydantic import BaseModel


MANIFEST_EXTENSION = 'yml'
MANIFEST_EXTENSIONS = ('.yml', '.yaml')

ModelType = TypeVar('ModelType', bound=BaseModel)


@dataclass(frozen=True)
class FileDescriptor:
    """Address of one exported artifact: base_dir/org/space/name.extension."""

    base_dir: str
    org: str
    space: str
    name: str
    extension: str = MANIFEST_EXTENSION

    @property
    def directory(self) -> Path:
        return Path(self.base_dir) / self.org / self.space

    @property
    def path(self) -> Path:
        return self.directory / f'{self.name}.{self.extension}'

    @classmethod
    def from_path(cls, base_dir: str, path: Path) -> 'FileDescriptor':
        """Build a descriptor from a manifest path below base_dir.

        Args:
            base_dir: Export root directory
            path: Manifest path in the form base_dir/org/space/name.ext

        Returns:
            File descriptor for the manifest

        Raises:
            ValueError: If the path is not two levels below base_dir
        """
        relative = Path(path).relative_to(base_dir)
        if len(relative.parts) != 3:
            raise ValueError(f'{path} is not in the form <org>/<space>/<name>.yml')
        org, space, filename = relative.parts
        stem, _, extension = filename.rpartition('.')
        return cls(
            base_dir=str(base_dir),
            org=org,
            space=space,
            name=stem,
            extension=extension,
        )


class ManifestParser:
    """Reads and writes YAML manifests addressed by file descriptors."""

    def __init__(self):
        self.logger = logger.bind(component='ManifestParser')

    def marshal(self, data: Any, descriptor: FileDescriptor) -> Path:
        """Write data as YAML to the descriptor's path.

        Args:
            data: Model or mapping to write
            descriptor: Destination of the manifest

        Returns:
            Path of the written file
        """
        if isinstance(data, BaseModel):
            to_manifest = getattr(data, 'to_manifest', None)
            data = to_manifest() if to_manifest else data.model_dump(by_alias=True)

        descriptor.directory.mkdir(parents=True, exist_ok=True)
        with open(descriptor.path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, default_flow_style=False, indent=2, sort_keys=False)

        self.logger.debug(f'Wrote {descriptor.path}')
        return descriptor.path

    def unmarshal(self, model: Type[ModelType], descriptor: FileDescriptor) -> ModelType:
        """Read a YAML manifest into a model.

        Args:
            model: Pydantic model to validate the content with
            descriptor: Location of the manifest

        Returns:
            Parsed model instance
        """
        with open(descriptor.path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        return model.model_validate(data)


def is_manifest(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() in MANIFEST_EXTENSIONS


def is_empty_dir(path: str) -> bool:
    """Return True when path is missing or holds no entries."""
    directory = Path(path)
    if not directory.exists():
        return True
    return not any(directory.iterdir())


def list_org_dirs(base_dir: str) -> List[str]:
    """List org directory names below base_dir, sorted."""
    return sorted(p.name for p in Path(base_dir).iterdir() if p.is_dir())


def list_space_dirs(base_dir: str, org: str) -> List[str]:
    org_dir = Path(base_dir) / org
    if not org_dir.is_dir():
        return []
    return sorted(p.name for p in org_dir.iterdir() if p.is_dir())


def iter_manifests(base_dir: str, org: str, space: str) -> Iterator[FileDescriptor]:
    """Yield descriptors for the manifest files of one space.

    Files without a yml/yaml extension are ignored.
    """
    space_dir = Path(base_dir) / org / space
    if not space_dir.is_dir():
        return
    for path in sorted(space_dir.iterdir()):
        if not is_manifest(path):
            continue
        yield FileDescriptor.from_path(base_dir, path)


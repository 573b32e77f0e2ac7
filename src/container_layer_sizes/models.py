"""Data models for layer size trees and image histories."""

import posixpath
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class DirectoryNode:
    """File sizes of a directory including all of its subdirectories.

    ``total_size`` is always the sum of ``files`` plus the ``total_size`` of
    every entry in ``subdirs``. Subdirectories are owned by their parent and
    are mutated in place when a file is inserted below them.
    """

    name: str
    total_size: int = 0
    files: Dict[str, int] = field(default_factory=dict)
    subdirs: Dict[str, "DirectoryNode"] = field(default_factory=dict)

    def insert(self, path: str, size: int) -> None:
        """Insert the file at ``path`` with ``size`` bytes below this node.

        Missing intermediate directories are created and the total size of
        every visited directory grows by ``size``. Inserting the same path
        twice adds the sizes up.

        Args:
            path: File path relative to this node, e.g. "/usr/bin/cat" or
                "./etc/os-release"
            size: File size in bytes
        """
        base_name = posixpath.basename(path)
        dirs = [
            part
            for part in posixpath.dirname(path).split("/")
            if part and part != "."
        ]

        self.total_size += size

        if not dirs:
            self.files[base_name] = size
            return

        subdir = self.subdirs.get(dirs[0])
        if subdir is None:
            subdir = DirectoryNode(name=dirs[0])
            self.subdirs[dirs[0]] = subdir
        subdir.insert("/".join(dirs[1:] + [base_name]), size)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dirname": self.name,
            "total_size": self.total_size,
            "files": dict(self.files),
            "directories": {
                name: subdir.to_dict() for name, subdir in self.subdirs.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryNode":
        return cls(
            name=data.get("dirname", "/"),
            total_size=data.get("total_size", 0),
            files=dict(data.get("files") or {}),
            subdirs={
                name: DirectoryNode.from_dict(subdir)
                for name, subdir in (data.get("directories") or {}).items()
            },
        )


@dataclass
class Layer(DirectoryNode):
    """Size tree of a single image layer rooted at ``/``."""

    name: str = "/"
    # command that created this layer, taken from the image config history
    created_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["created_by"] = self.created_by
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Layer":
        root = DirectoryNode.from_dict(data)
        return cls(
            name=root.name,
            total_size=root.total_size,
            files=root.files,
            subdirs=root.subdirs,
            created_by=data.get("created_by", ""),
        )


# key is the hex part of the layer digest
LayerSet = Dict[str, Layer]


def layers_to_dict(layers: LayerSet) -> Dict[str, Any]:
    """Convert a layer set to its JSON representation."""
    return {digest: layer.to_dict() for digest, layer in layers.items()}


def layers_from_dict(data: Dict[str, Any]) -> LayerSet:
    """Build a layer set from its JSON representation."""
    return {digest: Layer.from_dict(layer) for digest, layer in data.items()}


@dataclass
class ImageInspectInfo:
    """Image metadata derived from the image config."""

    tag: str = ""
    created: str = ""
    docker_version: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    architecture: str = ""
    variant: str = ""
    os: str = ""
    layers: List[str] = field(default_factory=list)
    env: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag": self.tag,
            "created": self.created,
            "docker_version": self.docker_version,
            "labels": dict(self.labels),
            "architecture": self.architecture,
            "variant": self.variant,
            "os": self.os,
            "layers": list(self.layers),
            "env": list(self.env),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageInspectInfo":
        return cls(
            tag=data.get("tag", ""),
            created=data.get("created", ""),
            docker_version=data.get("docker_version", ""),
            labels=dict(data.get("labels") or {}),
            architecture=data.get("architecture", ""),
            variant=data.get("variant", ""),
            os=data.get("os", ""),
            layers=list(data.get("layers") or []),
            env=list(data.get("env") or []),
        )


@dataclass
class ImageHistoryEntry:
    """A single analyzed version of an image."""

    tags: List[str] = field(default_factory=list)
    contents: LayerSet = field(default_factory=dict)
    # opaque to the store, usually ImageInspectInfo.to_dict()
    inspect_info: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tags": list(self.tags),
            "contents": layers_to_dict(self.contents),
            "inspect_info": self.inspect_info,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageHistoryEntry":
        return cls(
            tags=list(data.get("tags") or []),
            contents=layers_from_dict(data.get("contents") or {}),
            inspect_info=dict(data.get("inspect_info") or {}),
            id=data.get("id"),
        )


@dataclass
class ImageEntry:
    """A persisted image record without its history."""

    id: int
    name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name}


@dataclass
class ImageHistory:
    """All analyzed versions of an image, keyed by manifest digest."""

    name: str
    history: Dict[str, ImageHistoryEntry] = field(default_factory=dict)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "history": {
                digest: entry.to_dict() for digest, entry in self.history.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageHistory":
        if not isinstance(data, dict) or not isinstance(data.get("name"), str):
            raise ValueError("Image history must be an object with a 'name'")
        return cls(
            name=data["name"],
            history={
                digest: ImageHistoryEntry.from_dict(entry)
                for digest, entry in (data.get("history") or {}).items()
            },
            id=data.get("id"),
        )

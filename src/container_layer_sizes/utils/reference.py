"""Image reference parsing."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from ..exceptions import ReferenceParseError

DEFAULT_TAG = "latest"
DEFAULT_REGISTRY = "docker.io"

DOCKER_TRANSPORT = "docker"
OCI_TRANSPORT = "oci"

TAG_PATTERN = re.compile(r"^[\w][\w.-]{0,127}$")
PATH_COMPONENT_PATTERN = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|[-]*)[a-z0-9]+)*$")
DOMAIN_PATTERN = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?(?::[0-9]+)?$")


@dataclass(frozen=True)
class ImageReference:
    """Location of an image within a transport.

    For the ``docker`` transport ``name`` is the repository on ``registry``;
    for the ``oci`` transport ``name`` is the path of an OCI layout directory
    and ``tag`` is the reference name inside that layout.
    """

    transport: str
    name: str
    tag: str = DEFAULT_TAG
    registry: str = ""

    @property
    def ref_name(self) -> str:
        """Reference name of this image inside a local OCI layout."""
        if self.transport == OCI_TRANSPORT:
            return self.tag
        return f"{self.registry}/{self.name}:{self.tag}"

    def local_reference(self, storage_dir: Union[str, Path]) -> "ImageReference":
        """Reference of this image in the local content store."""
        if self.transport == OCI_TRANSPORT:
            return self
        return ImageReference(
            transport=OCI_TRANSPORT, name=str(storage_dir), tag=self.ref_name
        )

    def __str__(self) -> str:
        if self.transport == OCI_TRANSPORT:
            return f"{OCI_TRANSPORT}:{self.name}:{self.tag}"
        return f"{DOCKER_TRANSPORT}://{self.registry}/{self.name}:{self.tag}"


def split_tag(reference: str) -> tuple[str, str | None]:
    """Split the tag off a reference.

    Only a colon after the last '/' separates a tag, so registry ports like
    localhost:5000/myapp are left alone.

    Examples:
        split_tag("nginx:alpine")               -> ("nginx", "alpine")
        split_tag("localhost:5000/myapp")       -> ("localhost:5000/myapp", None)
        split_tag("localhost:5000/myapp:1.0")   -> ("localhost:5000/myapp", "1.0")
    """
    slash = reference.rfind("/")
    colon = reference.rfind(":")
    if colon > slash:
        return reference[:colon], reference[colon + 1 :]
    return reference, None


def _validate_tag(tag: str | None, image: str) -> str:
    if tag is None:
        return DEFAULT_TAG
    if not TAG_PATTERN.match(tag):
        raise ReferenceParseError(f"Invalid tag {tag!r} in image {image!r}")
    return tag


def _parse_oci(image: str, location: str) -> ImageReference:
    path, tag = split_tag(location)
    if not path:
        raise ReferenceParseError(f"Missing OCI layout path in image {image!r}")
    return ImageReference(
        transport=OCI_TRANSPORT, name=path, tag=_validate_tag(tag, image)
    )


def _parse_docker(image: str, location: str) -> ImageReference:
    name, tag = split_tag(location)
    components = name.split("/")

    registry = DEFAULT_REGISTRY
    if len(components) > 1 and (
        "." in components[0] or ":" in components[0] or components[0] == "localhost"
    ):
        registry = components.pop(0)
        if not DOMAIN_PATTERN.match(registry):
            raise ReferenceParseError(f"Invalid registry {registry!r} in image {image!r}")

    if not components or not all(PATH_COMPONENT_PATTERN.match(c) for c in components):
        raise ReferenceParseError(f"Invalid repository name in image {image!r}")

    if registry == DEFAULT_REGISTRY and len(components) == 1:
        components.insert(0, "library")

    return ImageReference(
        transport=DOCKER_TRANSPORT,
        name="/".join(components),
        tag=_validate_tag(tag, image),
        registry=registry,
    )


def parse_image_reference(image: str) -> ImageReference:
    """Parse an image string into an image reference.

    Args:
        image: Image reference
            - registry image: "nginx", "nginx:alpine", "localhost:5000/myapp:1.0"
            - explicit transport: "docker://docker.io/library/node"
            - OCI layout directory: "oci:/var/lib/images/app:1.0"

    Returns:
        ImageReference: parsed reference, the tag defaults to "latest"

    Raises:
        ReferenceParseError: If the image cannot be parsed
    """
    if not isinstance(image, str) or not image.strip():
        raise ReferenceParseError("Image reference must not be empty")

    image = image.strip()
    if image.startswith(f"{OCI_TRANSPORT}:"):
        return _parse_oci(image, image[len(OCI_TRANSPORT) + 1 :])
    if image.startswith(f"{DOCKER_TRANSPORT}://"):
        return _parse_docker(image, image[len(DOCKER_TRANSPORT) + 3 :])
    if "://" in image:
        raise ReferenceParseError(f"Unsupported transport in image {image!r}")
    return _parse_docker(image, image)

# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Image reference parsing and validation.
Parses references like 'mongo', 'node:18-alpine' or 'ghcr.io/acme/api@sha256:...'.
"""

import re
from typing import Optional
from dataclasses import dataclass

_COMPONENT = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Fa-f0-9]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    """
    Parsed image reference.

    Examples:
        - mongo -> docker.io/library/mongo:latest
        - node:18-alpine -> docker.io/library/node:18-alpine
        - acme/web:v1 -> docker.io/acme/web:v1
        - localhost:5000/api -> localhost:5000/api:latest
    """

    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = "docker.io"
    DEFAULT_TAG = "latest"

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """
        Parse an image reference string.

        Args:
            reference: Image reference string (e.g., 'mongo:6', 'acme/web:v1')

        Returns:
            Parsed ImageReference object.

        Raises:
            ValueError: If the reference is empty or malformed.
        """
        if not reference or reference != reference.strip():
            raise ValueError(f"Invalid image reference: {reference!r}")

        remainder = reference
        digest = None
        if "@" in remainder:
            remainder, digest = remainder.rsplit("@", 1)
            if not _DIGEST.match(digest):
                raise ValueError(f"Invalid digest in image reference: {reference!r}")

        tag = None
        last_colon = remainder.rfind(":")
        # A colon followed by a slash belongs to a registry port, not a tag.
        if last_colon != -1 and "/" not in remainder[last_colon + 1:]:
            tag = remainder[last_colon + 1:]
            remainder = remainder[:last_colon]
            if not _TAG.match(tag):
                raise ValueError(f"Invalid tag in image reference: {reference!r}")

        parts = remainder.split("/")
        first = parts[0]
        if len(parts) > 1 and ("." in first or ":" in first or first == "localhost"):
            registry = first
            parts = parts[1:]
        else:
            registry = cls.DEFAULT_REGISTRY
            if len(parts) == 1:
                parts = ["library"] + parts

        for component in parts:
            if not _COMPONENT.match(component):
                raise ValueError(f"Invalid repository name in image reference: {reference!r}")

        if not tag and not digest:
            tag = cls.DEFAULT_TAG

        return cls(registry=registry, repository="/".join(parts), tag=tag, digest=digest)

    @classmethod
    def is_valid(cls, reference: str) -> bool:
        try:
            cls.parse(reference)
        except ValueError:
            return False
        return True

    @property
    def full_name(self) -> str:
        """Get full image name with registry."""
        name = f"{self.registry}/{self.repository}"
        if self.tag:
            name = f"{name}:{self.tag}"
        if self.digest:
            name = f"{name}@{self.digest}"
        return name

    @property
    def short_name(self) -> str:
        """Get short image name (without registry if default)."""
        if self.registry != self.DEFAULT_REGISTRY:
            return self.full_name
        repo = self.repository
        if repo.startswith("library/"):
            repo = repo[len("library/"):]
        if self.tag:
            repo = f"{repo}:{self.tag}"
        if self.digest:
            repo = f"{repo}@{self.digest}"
        return repo

    def __str__(self) -> str:
        return self.short_name

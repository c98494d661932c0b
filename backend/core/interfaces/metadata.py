# core/interfaces/metadata.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class EmbeddedFile:
    filename: str
    content: bytes
    media_type: str


class MetadataEmbedder(ABC):
    """Attaches an RSL license document to a content file and reads it back."""

    formats: tuple = ()

    @abstractmethod
    def embed(self, file: EmbeddedFile, license_xml: str, fmt: str) -> EmbeddedFile: ...

    @abstractmethod
    def extract(self, file: EmbeddedFile) -> Optional[str]: ...

"""
Interfaces to the collaborators the pipeline drives but does not own.

Content writing, document layout and translation are supplied by other
services. The defaults here are deliberately plain so the pipeline runs end
to end without them: deterministic template chapters, a UTF-8 text renderer
and a translator that returns its input.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional, Protocol, Tuple

from .models import Asset, Chapter, DocumentFormat, Language, Project

logger = logging.getLogger(__name__)


class AssetProvider(Protocol):
    def get(self, storage_key: str) -> bytes:
        ...


@dataclass
class RenderableDocument:
    title: str
    subtitle: Optional[str]
    author: str
    format: DocumentFormat
    language: Language
    chapters: List[Chapter]
    images: List[Asset] = field(default_factory=list)
    map_asset: Optional[Asset] = None


class ContentGenerator(Protocol):
    def generate(self, project: Project, number_of_chapters: int) -> List[Chapter]:
        ...


class DocumentRenderer(Protocol):
    def render(self, document: RenderableDocument, sink: BinaryIO, assets: AssetProvider) -> None:
        """Write the finished document to ``sink`` incrementally."""
        ...


class Translator(Protocol):
    def translate_metadata(
        self, title: str, subtitle: Optional[str], source: Language, target: Language
    ) -> Tuple[str, Optional[str]]:
        ...

    def translate_chapters(self, chapters: List[Chapter], source: Language, target: Language) -> List[Chapter]:
        ...


class TemplateContentGenerator:
    """Generates placeholder chapters: an introduction, numbered body chapters and a closing one."""

    def generate(self, project: Project, number_of_chapters: int) -> List[Chapter]:
        chapters = []
        for order in range(1, number_of_chapters + 1):
            if order == 1:
                title = "Introduction"
            elif order == number_of_chapters and number_of_chapters > 1:
                title = "Final Notes"
            else:
                title = f"Chapter {order - 1}"
            content = f"{title} of {project.title} by {project.author}."
            chapters.append(Chapter(order=order, title=title, content=content))
        return chapters


class TextDocumentRenderer:
    """
    Renders a plain UTF-8 outline of the book.

    Images are fetched through the asset provider and referenced by name,
    size and digest so the output still depends on the asset bytes.
    """

    def render(self, document: RenderableDocument, sink: BinaryIO, assets: AssetProvider) -> None:
        def write(line: str = "") -> None:
            sink.write(f"{line}\n".encode("utf-8"))

        write(f"# {document.title}")
        if document.subtitle:
            write(f"## {document.subtitle}")
        write(f"{document.author} | {document.language.value} | {document.format.value}")
        write()

        if document.map_asset:
            write(self._describe(document.map_asset, assets))
            write()

        for chapter in document.chapters:
            write(f"## {chapter.order}. {chapter.title}")
            write(chapter.content)
            for image in document.images:
                if image.chapter_number == chapter.order:
                    write(self._describe(image, assets))
            write()

    @staticmethod
    def _describe(asset: Asset, assets: AssetProvider) -> str:
        blob = assets.get(asset.storage_key)
        digest = hashlib.sha256(blob).hexdigest()[:12]
        label = "map" if asset.is_map else "image"
        caption = f" {asset.caption}" if asset.caption else ""
        return f"[{label}: {asset.original_name} {len(blob)} bytes {digest}]{caption}"


class NoopTranslator:
    """Returns the source text unchanged."""

    def translate_metadata(
        self, title: str, subtitle: Optional[str], source: Language, target: Language
    ) -> Tuple[str, Optional[str]]:
        return title, subtitle

    def translate_chapters(self, chapters: List[Chapter], source: Language, target: Language) -> List[Chapter]:
        logger.debug(f"Passing {len(chapters)} chapters through from {source.value} to {target.value}")
        return [Chapter(order=chapter.order, title=chapter.title, content=chapter.content) for chapter in chapters]

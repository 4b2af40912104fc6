"""Structured response envelope and the legacy in-band completion marker.

Replies carry ``{done, artifacts}``. When the model integration cannot
produce the envelope, ``envelope_from_text`` derives one by scanning the
reply for the ``COORDINATOR:`` marker and ``<write_file>`` blocks.
"""

import re
from typing import List, Optional

from src.domain.schema import GeneratedFile, ResponseEnvelope

COMPLETION_MARKER = re.compile(r"COORDINATOR:\s*([^\n]+)")
WRITE_FILE_BLOCK = re.compile(r'<write_file[\s\S]*?path="([^"]+)"[\s\S]*?>([\s\S]*?)</write_file>')

FILE_ARTIFACT_KIND = "file"


def completion_signal(text: str) -> Optional[str]:
    """Text following the completion marker, None when absent."""
    match = COMPLETION_MARKER.search(text or "")
    return match.group(1).strip() if match else None


def detect_written_files(text: str) -> List[GeneratedFile]:
    """Files declared with ``<write_file path="...">...</write_file>``."""
    return [
        GeneratedFile(path=match.group(1), content=match.group(2))
        for match in WRITE_FILE_BLOCK.finditer(text or "")
    ]


def envelope_from_text(text: str) -> ResponseEnvelope:
    """Build an envelope from free text."""
    artifacts = [
        {"kind": FILE_ARTIFACT_KIND, "path": f.path, "content": f.content}
        for f in detect_written_files(text)
    ]
    return ResponseEnvelope(done=completion_signal(text) is not None, artifacts=artifacts, text=text or "")


def resolve_envelope(text: str, envelope: Optional[ResponseEnvelope]) -> ResponseEnvelope:
    """Prefer a structured envelope; fall back to scanning the text."""
    if envelope is None:
        return envelope_from_text(text)
    if not envelope.text and text:
        return envelope.model_copy(update={"text": text})
    return envelope


def files_from_envelope(envelope: ResponseEnvelope) -> List[GeneratedFile]:
    """Generated files carried as envelope artifacts."""
    files = []
    for artifact in envelope.artifacts:
        if artifact.get("kind", FILE_ARTIFACT_KIND) == FILE_ARTIFACT_KIND and artifact.get("path"):
            files.append(GeneratedFile(path=str(artifact["path"]), content=str(artifact.get("content") or "")))
    return files

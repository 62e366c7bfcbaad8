"""Magic-number checks for the supported CV document formats."""
from typing import Dict, Optional

MIME_PDF = "application/pdf"
MIME_DOC = "application/msword"
MIME_DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

PDF_MAGIC = b"%PDF"
OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"  # legacy .doc compound file
ZIP_MAGIC = b"PK\x03\x04"  # .docx container

SIGNATURES: Dict[str, bytes] = {
    MIME_PDF: PDF_MAGIC,
    MIME_DOC: OLE2_MAGIC,
    MIME_DOCX: ZIP_MAGIC,
}

# Canonical extension per MIME type, plus the extensions accepted for it
EXTENSIONS: Dict[str, tuple] = {
    MIME_PDF: (".pdf",),
    MIME_DOC: (".doc",),
    MIME_DOCX: (".docx",),
}

MIN_SIGNATURE_BYTES = 8


def expected_signature(mime_type: str) -> Optional[bytes]:
    return SIGNATURES.get(mime_type)


def matches_signature(content: bytes, mime_type: str) -> bool:
    """True when `content` starts with the magic number of `mime_type`.

    Buffers shorter than 8 bytes never match, whatever the type.
    """
    if len(content) < MIN_SIGNATURE_BYTES:
        return False
    signature = SIGNATURES.get(mime_type)
    if signature is None:
        return False
    return content[:len(signature)] == signature


def mime_type_for_extension(ext: str) -> str:
    ext = ext.lower()
    for mime_type, exts in EXTENSIONS.items():
        if ext in exts:
            return mime_type
    return "application/octet-stream"

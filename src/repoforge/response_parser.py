"""Extraction of structured data from free-form model responses.

Two independent pipelines:

- extract_identified_files() reads the JSON object of the first model call.
- extract_change_set() reads the XML change document of the second call,
  trying an ordered list of grammar extractors on the parsed document.

Models regularly ignore formatting instructions, so both pipelines accept
code fences and surrounding prose.
"""

from __future__ import annotations

import json
import logging
import re
import xml.etree.ElementTree as ET
from typing import Any, Callable, Optional, Sequence

from .errors import NoFilesIdentifiedError, ResponseFormatError

logger = logging.getLogger(__name__)

ChangeSet = dict[str, str]
ChangeExtractor = Callable[[ET.Element], ChangeSet]

IDENTIFIED_FILES_KEY = "identifiedFiles"

# ``` or ```json ... ```
FENCE_PATTERN = re.compile(r"```[\w.+-]*[ \t]*\r?\n?(.*?)```", re.DOTALL)
ROOT_TAG_PATTERN = re.compile(r"<(repository|changes)\b")
FILE_ATTR_BLOCK_PATTERN = re.compile(
    r"<file\s+path\s*=\s*([\"'])(.+?)\1\s*>(.*?)</file>", re.DOTALL
)
FILE_CHILD_BLOCK_PATTERN = re.compile(
    r"<file>\s*<path>(.*?)</path>(.*?)</file>", re.DOTALL
)
CONTENT_PATTERN = re.compile(r"<content>(.*)</content>", re.DOTALL)
CONTENT_BLOCK_PATTERN = re.compile(r"(<content(?:\s[^>]*)?>)(.*?)</content>", re.DOTALL)
CDATA_SECTION_PATTERN = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.DOTALL)
ENTITY_PATTERN = re.compile(r"&(lt|gt|amp|quot|apos|#[0-9]+|#[xX][0-9a-fA-F]+);")
XML_ENTITIES = {"lt": "<", "gt": ">", "amp": "&", "quot": '"', "apos": "'"}


def _fenced_block(text: str) -> Optional[str]:
    match = FENCE_PATTERN.search(text)
    if match:
        return match.group(1)
    return None


# -- JSON: identified files ------------------------------------------------


def _first_balanced_object(text: str) -> Optional[Any]:
    """Find the first brace-balanced substring that parses as JSON."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escape = False
        for i in range(start, len(text)):
            char = text[i]
            if escape:
                escape = False
                continue
            if char == "\\":
                escape = True
                continue
            if char == '"':
                in_string = not in_string
                continue
            if in_string:
                continue
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    try:
                        return json.loads(text[start:i + 1])
                    except json.JSONDecodeError:
                        break
        start = text.find("{", start + 1)
    return None


def parse_json_object(text: str) -> dict:
    """Parse the JSON object embedded in a model response.

    The working string is the first fenced block if there is one, otherwise
    the whole response. The span from the first '{' to the last '}' is
    parsed; if that fails, the first brace-balanced object is tried.

    Raises:
        ResponseFormatError: If no JSON object can be parsed.
    """
    if not text or not text.strip():
        raise ResponseFormatError("Empty model response; expected a JSON object")

    fenced = _fenced_block(text)
    working = fenced if fenced is not None else text

    start = working.find("{")
    end = working.rfind("}")
    if start == -1 or end < start:
        raise ResponseFormatError(
            "No JSON object found in model response",
            details={"response": text[:500]},
        )

    try:
        data = json.loads(working[start:end + 1])
    except json.JSONDecodeError as e:
        data = _first_balanced_object(working)
        if data is None:
            raise ResponseFormatError(
                f"Failed to parse JSON from model response: {e}",
                details={"response": text[:500]},
            ) from e

    if not isinstance(data, dict):
        raise ResponseFormatError("Model response JSON is not an object")
    return data


def extract_identified_files(text: str) -> list[str]:
    """Extract the identifiedFiles list from the first model response.

    Args:
        text: Raw model response.

    Returns:
        The identified logical paths, in the order the model gave them.

    Raises:
        ResponseFormatError: If the JSON is missing, malformed, or the field
            is not a list of strings.
        NoFilesIdentifiedError: If the list is empty.
    """
    data = parse_json_object(text)

    if IDENTIFIED_FILES_KEY not in data:
        raise ResponseFormatError(
            f"Failed to extract {IDENTIFIED_FILES_KEY} from AI response",
            details={"keys": sorted(data.keys())},
        )

    files = data[IDENTIFIED_FILES_KEY]
    if not isinstance(files, list):
        raise ResponseFormatError(
            f"{IDENTIFIED_FILES_KEY} must be a list, got {type(files).__name__}"
        )
    if not files:
        raise NoFilesIdentifiedError("AI did not identify any files for this task.")

    for entry in files:
        if not isinstance(entry, str) or not entry.strip():
            raise ResponseFormatError(
                f"{IDENTIFIED_FILES_KEY} entries must be non-empty strings, got {entry!r}"
            )

    logger.debug(f"Identified {len(files)} files: {files}")
    return files


# -- XML: change documents -------------------------------------------------


def _entity(match: re.Match) -> str:
    name = match.group(1)
    if name in XML_ENTITIES:
        return XML_ENTITIES[name]
    try:
        return chr(int(name[2:], 16) if name[1] in "xX" else int(name[1:]))
    except (ValueError, OverflowError):
        return match.group(0)


def _unescape_text(text: str) -> str:
    return ENTITY_PATTERN.sub(_entity, text)


def decode_content(raw: str) -> str:
    """Decode raw <content> markup into file text.

    CDATA sections are unwrapped and entities outside them are decoded.
    Everything else, nested tags and comments included, is kept as written.
    """
    parts = []
    position = 0
    for match in CDATA_SECTION_PATTERN.finditer(raw):
        parts.append(_unescape_text(raw[position:match.start()]))
        parts.append(match.group(1))
        position = match.end()
    parts.append(_unescape_text(raw[position:]))
    return "".join(parts)


def parse_markup(markup: str) -> ET.Element:
    """Parse a change document, keeping <content> bodies as raw text.

    Each content body is set aside before parsing and put back afterwards,
    so element text is exactly what the model wrote, decoded but never
    re-serialized.

    Raises:
        ET.ParseError: If the document structure is not well-formed.
    """
    bodies: list[str] = []

    def _set_aside(match: re.Match) -> str:
        bodies.append(match.group(2))
        return f"{match.group(1)}{len(bodies) - 1}</content>"

    root = ET.fromstring(CONTENT_BLOCK_PATTERN.sub(_set_aside, markup))
    for element in root.iter("content"):
        index = (element.text or "").strip()
        if index.isdigit() and int(index) < len(bodies):
            element.text = decode_content(bodies[int(index)])
    return root


def _content_text(element: Optional[ET.Element]) -> str:
    if element is None:
        return ""
    return element.text or ""


def _file_path(file_element: ET.Element) -> str:
    path = file_element.get("path")
    if not path:
        path_element = file_element.find("path")
        if path_element is not None:
            path = path_element.text or ""
    return (path or "").strip()


def _find_element(root: ET.Element, tag: str) -> Optional[ET.Element]:
    if root.tag == tag:
        return root
    return root.find(f".//{tag}")


def extract_repomix_files(root: ET.Element) -> ChangeSet:
    """Read <repository><repository_files><file>... documents.

    Contents are kept verbatim.
    """
    files: ChangeSet = {}
    repository = _find_element(root, "repository")
    if repository is None:
        return files

    for wrapper in repository:
        if wrapper.tag not in ("repository_files", "repository-files"):
            continue
        for file_element in wrapper.findall("file"):
            path = _file_path(file_element)
            if path:
                files[path] = _content_text(file_element.find("content"))

    logger.debug(f"Extracted {len(files)} files from repomix grammar")
    return files


def extract_simple_changes(root: ET.Element) -> ChangeSet:
    """Read <changes><file path="..."><content>... documents.

    The path may be an attribute or a nested <path> element. Contents are
    trimmed of surrounding whitespace.
    """
    files: ChangeSet = {}
    changes = _find_element(root, "changes")
    if changes is None:
        return files

    for file_element in changes.findall("file"):
        path = _file_path(file_element)
        if path:
            files[path] = _content_text(file_element.find("content")).strip()

    logger.debug(f"Extracted {len(files)} files from <changes> grammar")
    return files


CHANGE_EXTRACTORS: tuple[ChangeExtractor, ...] = (
    extract_repomix_files,
    extract_simple_changes,
)


def markup_candidates(text: str) -> list[str]:
    """Cut the candidate XML documents out of a model response.

    Every <changes or <repository opening tag that has a matching closing
    tag later in the text starts a candidate running to the last such
    closing tag, in document order. Prose that mentions a root tag before
    the real document therefore yields an extra, earlier candidate that
    does not parse.

    Raises:
        ResponseFormatError: If the response contains no markup at all.
    """
    # Searched on the raw text: file contents may carry their own fences.
    candidates = []
    first = None
    for match in ROOT_TAG_PATTERN.finditer(text):
        first = first or match
        closing = f"</{match.group(1)}>"
        end = text.rfind(closing)
        if end > match.start():
            candidates.append(text[match.start():end + len(closing)])
    if candidates:
        return candidates
    if first:
        return [text[first.start():]]

    fenced = _fenced_block(text)
    working = fenced if fenced is not None and "<" in fenced else text
    start = working.find("<")
    end = working.rfind(">")
    if start == -1 or end < start:
        raise ResponseFormatError(
            "No XML document found in model response",
            details={"response": text[:500]},
        )
    return [working[start:end + 1]]


def locate_markup(text: str) -> str:
    """Return the outermost candidate XML document of a model response."""
    return markup_candidates(text)[0]


def scan_file_blocks(text: str) -> ChangeSet:
    """Tolerant regex scan for <file> blocks in markup that is not valid XML.

    Handles code with unescaped '<' or '&' that breaks a strict parser.
    """
    files: ChangeSet = {}
    blocks = [(m.start(), m.group(2), m.group(3)) for m in FILE_ATTR_BLOCK_PATTERN.finditer(text)]
    blocks += [(m.start(), m.group(1), m.group(2)) for m in FILE_CHILD_BLOCK_PATTERN.finditer(text)]

    for _, path, body in sorted(blocks, key=lambda b: b[0]):
        path = path.strip()
        if not path:
            continue
        content_match = CONTENT_PATTERN.search(body)
        content = content_match.group(1) if content_match else ""
        files[path] = decode_content(content).strip()
    return files


def extract_change_set(
    text: str,
    extractors: Sequence[ChangeExtractor] = CHANGE_EXTRACTORS,
) -> ChangeSet:
    """Extract a path -> content mapping from the second model response.

    The first candidate document that parses is used. Extractors are tried
    in order on it and the first non-empty result wins. A well-formed
    document with no file entries yields an empty mapping.

    Args:
        text: Raw model response.
        extractors: Grammar extractors, in priority order.

    Returns:
        The change set, possibly empty.

    Raises:
        ResponseFormatError: If the response is not parseable markup.
    """
    if not text or not text.strip():
        raise ResponseFormatError("Empty model response; expected an XML change document")

    candidates = markup_candidates(text)

    root = None
    error = None
    for markup in candidates:
        try:
            root = parse_markup(markup)
            break
        except ET.ParseError as e:
            error = error or e

    if root is None:
        files = scan_file_blocks(candidates[0])
        if files:
            logger.warning(
                f"Model XML is not well-formed ({error}); recovered {len(files)} files by scanning"
            )
            return files
        raise ResponseFormatError(
            f"Failed to parse XML: {error}",
            details={"response": text[:500]},
        ) from error

    for extractor in extractors:
        files = extractor(root)
        if files:
            return files

    logger.info("Change document contained no file entries")
    return {}

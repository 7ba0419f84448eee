"""Prompt templates for the two model calls."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Mapping

from jinja2 import StrictUndefined, Template, UndefinedError

from .errors import InvalidInput

logger = logging.getLogger(__name__)


class PromptKind(str, Enum):
    """The prompts sent to the model, in pipeline order."""

    IDENTIFY_FILES = "identify_files"
    GENERATE_CHANGES = "generate_changes"


IDENTIFY_FILES_TEMPLATE = """You are an AI assistant that helps with code modifications.
Here is the compressed codebase context in XML format and the project documentation.
Analyze this context to understand the project structure and existing code.
Based on the user's task, identify the specific files that need to be modified or created.

Codebase Context (Compressed XML):
{{ compressed_context }}

Documentation:
{{ documentation }}

User Task: "{{ task }}"

Identify the files required for this task.
Respond with ONLY a JSON object in exactly this structure:
{"identifiedFiles": ["path/to/file1", "path/to/file2"]}

Paths must be relative to the repository root.
Do not include any explanation, prose, or markdown code fences."""


GENERATE_CHANGES_TEMPLATE = """You are an AI assistant that modifies code.
Based on the original task and the following uncompressed file contents and documentation,
generate the necessary code modifications or new code in XML format.
The XML must clearly indicate file paths and their complete, modified or new content.

User Task: "{{ task }}"

Documentation:
{{ documentation }}

Targeted File Contents (Uncompressed XML):
{{ targeted_context }}

Respond with ONLY an XML document in exactly this structure:
<changes>
  <file path="path/to/modified/file.js">
    <content>
      // Complete content of the modified file
    </content>
  </file>
  <file path="path/to/new/file.js">
    <content>
      // Complete content of the new file
    </content>
  </file>
</changes>

Rules:
- Each <content> element must contain the COMPLETE file content, never a diff or fragment
- Only include files that must change to accomplish the task
- Do not rewrite unrelated code
- Do not include any text outside the <changes> document"""


TEMPLATES: dict[PromptKind, str] = {
    PromptKind.IDENTIFY_FILES: IDENTIFY_FILES_TEMPLATE,
    PromptKind.GENERATE_CHANGES: GENERATE_CHANGES_TEMPLATE,
}


def render_prompt(kind: PromptKind | str, variables: Mapping[str, Any]) -> str:
    """Render one of the pipeline prompts.

    Args:
        kind: Which template to render.
        variables: Values interpolated into the template. The identify-files
            prompt needs compressed_context, documentation and task; the
            generate-changes prompt needs task, documentation and
            targeted_context.

    Returns:
        Rendered prompt string.

    Raises:
        InvalidInput: If the kind is unknown or a variable is missing.
    """
    try:
        kind = PromptKind(kind)
    except ValueError as e:
        raise InvalidInput(f"Unknown prompt kind: {kind}") from e

    template = Template(TEMPLATES[kind], undefined=StrictUndefined, keep_trailing_newline=True)
    try:
        prompt = template.render(**variables)
    except UndefinedError as e:
        raise InvalidInput(f"Missing variable for prompt '{kind.value}': {e}") from e

    logger.debug(f"Rendered prompt '{kind.value}' ({len(prompt)} chars)")
    return prompt

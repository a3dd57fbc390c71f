"""Rule document and stack manifest loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RULE_FILE_SIZE_BYTES, MAX_STACK_FILE_SIZE_BYTES
from .models import PolicyRule, StackSpec

logger = logging.getLogger(__name__)


class PolicyDocumentError(Exception):
    """Raised when a rule document or stack manifest cannot be parsed or validated.

    `errors` holds one entry per problem so callers can report all of them.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors if errors is not None else [message]


@dataclass
class Stack:
    """A parsed stack manifest together with its loaded rule documents."""

    path: Path
    spec: StackSpec
    rules: dict[str, PolicyRule] = field(default_factory=dict)

    @property
    def base_dir(self) -> Path:
        """Directory rule files are resolved against."""
        return self.path.parent


def _format_validation_error(path: Path, e: ValidationError) -> list[str]:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        msg = error["msg"]
        errors.append(f"{path}: {loc}: {msg}" if loc else f"{path}: {msg}")
    return errors


def _read_bounded(path: Path, max_bytes: int, what: str) -> str:
    if not path.exists():
        raise PolicyDocumentError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise PolicyDocumentError(f"Failed to stat {what} {path}: {e}") from e

    if file_size > max_bytes:
        raise PolicyDocumentError(f"{what} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise PolicyDocumentError(f"Failed to read {what} {path}: {e}") from e


def _unwrap_rule(raw: dict[str, Any]) -> dict[str, Any]:
    """Accept a bare rule or the shape `az policy definition show` exports."""
    if "properties" in raw and isinstance(raw["properties"], dict):
        raw = raw["properties"]
    if "policyRule" in raw and isinstance(raw["policyRule"], dict):
        return raw["policyRule"]
    return raw


def parse_rule_document(content: str, source: str = "<string>") -> PolicyRule:
    """Parse and validate a policy rule from JSON text.

    Args:
        content: JSON text of the rule.
        source: Name used in error messages.

    Returns:
        Validated rule.

    Raises:
        PolicyDocumentError: On malformed JSON or a rule shape Azure would reject.
    """
    try:
        raw = json.loads(content)
    except json.JSONDecodeError as e:
        raise PolicyDocumentError(
            f"Invalid JSON in {source}: {e.msg} (line {e.lineno}, column {e.colno})"
        ) from e

    if not isinstance(raw, dict):
        raise PolicyDocumentError(f"Rule document must be a JSON object: {source}")

    try:
        return PolicyRule.model_validate(_unwrap_rule(raw))
    except ValidationError as e:
        errors = _format_validation_error(Path(source), e)
        raise PolicyDocumentError(
            f"Invalid policy rule in {source}:\n  - " + "\n  - ".join(errors), errors
        ) from e


def load_rule_document(path: Path) -> PolicyRule:
    """Load and validate a policy rule document from disk.

    Raises:
        PolicyDocumentError: If the file is missing, too large, or invalid.
    """
    content = _read_bounded(path, MAX_RULE_FILE_SIZE_BYTES, "Rule document")
    rule = parse_rule_document(content, str(path))
    logger.debug("Loaded rule document %s", path)
    return rule


def load_stack_manifest(path: Path) -> StackSpec:
    """Load and validate the stack manifest YAML.

    Supports both the flat format and the apiVersion/kind/spec wrapper.

    Raises:
        PolicyDocumentError: If the manifest cannot be loaded or fails validation.
    """
    content = _read_bounded(path, MAX_STACK_FILE_SIZE_BYTES, "Stack manifest")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PolicyDocumentError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise PolicyDocumentError(f"Stack manifest must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise PolicyDocumentError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        return StackSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = _format_validation_error(path, e)
        raise PolicyDocumentError(
            f"Validation failed for {path}:\n  - " + "\n  - ".join(errors), errors
        ) from e


def load_stack(path: Path) -> Stack:
    """Load the stack manifest and every rule document it references.

    All rule documents are attempted so the error lists every broken file,
    not only the first.

    Raises:
        PolicyDocumentError: If the manifest or any rule document is invalid.
    """
    spec = load_stack_manifest(path)
    stack = Stack(path=path, spec=spec)

    errors: list[str] = []
    for key, definition in spec.definitions.items():
        rule_path = stack.base_dir / definition.rule_file
        try:
            stack.rules[key] = load_rule_document(rule_path)
        except PolicyDocumentError as e:
            errors.extend(e.errors)

    if errors:
        raise PolicyDocumentError(
            f"Stack {path} has invalid rule documents:\n  - " + "\n  - ".join(errors), errors
        )

    logger.info(
        "Loaded stack from %s",
        path,
        extra={
            "definitions": len(spec.definitions),
            "assignments": len(spec.assignments),
        },
    )
    return stack

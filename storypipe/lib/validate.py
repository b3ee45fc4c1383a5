"""
Schema validation for storypipe documents.

Schemas live in storypipe/schemas/<name>.schema.json:

    story     stories/<id>/story.json
    status    stories/<id>/status.json (markers + audit)
    task      stories/<id>/tasks/task-NN.json
    pipeline  stories/<id>/pipeline.json (PipelineStatus snapshot)
    result    runs/<run_id>/result.json

The storage layer validates every document before it is written, so a bad
write fails loudly instead of leaving a file that later reads as corrupt.
"""

import json
from pathlib import Path

import jsonschema
from jsonschema.exceptions import best_match

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"


class ValidationError(Exception):
    """A document does not match its schema."""

    def __init__(self, schema_name: str, message: str, path: str = None):
        self.schema_name = schema_name
        self.path = path
        super().__init__(f"[{schema_name}] {message}" + (f" at {path}" if path else ""))


_validators: dict[str, jsonschema.Draft7Validator] = {}


def _validator(schema_name: str) -> jsonschema.Draft7Validator:
    validator = _validators.get(schema_name)
    if validator is None:
        schema_path = SCHEMAS_DIR / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationError(schema_name, f"Schema file not found: {schema_path}")
        schema = json.loads(schema_path.read_text())
        jsonschema.Draft7Validator.check_schema(schema)
        validator = jsonschema.Draft7Validator(schema)
        _validators[schema_name] = validator
    return validator


def validate(data: dict, schema_name: str) -> None:
    """
    Validate data against the named schema.

    When several constraints fail, the most relevant one is reported along
    with how many others failed.

    Raises:
        ValidationError: If validation fails
    """
    errors = list(_validator(schema_name).iter_errors(data))
    if not errors:
        return
    error = best_match(errors)
    path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"
    message = error.message
    if len(errors) > 1:
        message += f" (and {len(errors) - 1} more)"
    raise ValidationError(schema_name, message, path)


def validate_file(filepath: Path, schema_name: str) -> dict:
    """
    Load a JSON document and validate it.

    Returns:
        Parsed and validated data

    Raises:
        ValidationError: If file invalid or doesn't match schema
    """
    if not filepath.exists():
        raise ValidationError(schema_name, f"File not found: {filepath}")
    try:
        data = json.loads(filepath.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(schema_name, f"Invalid JSON in {filepath}: {e}") from None
    validate(data, schema_name)
    return data


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """Raise ValidationError naming filepath if data doesn't match the schema."""
    try:
        validate(data, schema_name)
    except ValidationError as e:
        raise ValidationError(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {e}",
        ) from None

import json
from pathlib import Path
from typing import Any, Dict, Literal

import jsonschema

SchemaType = Literal["backup", "conflict_report"]


def _load_schema(name: str) -> Dict[str, Any]:
    schema_path = Path(__file__).with_name(f"{name}.schema.json")
    with schema_path.open("r", encoding="utf-8") as f:
        return json.load(f)["schema"]


_compiled_schemas = {
    "backup": jsonschema.Draft7Validator(_load_schema("backup")),
    "conflict_report": jsonschema.Draft7Validator(_load_schema("conflict_report")),
}


def validate_against_schema(schema_type: SchemaType, data: Any) -> Dict[str, Any]:
    validator = _compiled_schemas.get(schema_type)
    if validator is None:
        raise ValueError(f"Unknown schema type: {schema_type}")
    errors = sorted(validator.iter_errors(data), key=lambda e: list(map(str, e.path)))
    if not errors:
        return {"valid": True, "errors": []}
    return {"valid": False, "errors": [f"{'/'.join(map(str, err.path))} {err.message}".strip() for err in errors]}

"""
Keystone Backend — Request Validation Helpers
=============================================

What:  Turns pydantic failures into the API's `{field, message, code, location}`
       detail entries, and validates several request targets at once.
Why:   A client fixing a bad request should see every problem in one response,
       not one per round-trip.
How:   FastAPI already validates body, path and query together and raises
       RequestValidationError; the global handler renders it with
       `format_validation_errors`. For inputs FastAPI can't declare directly
       (comma-separated query lists, camelCase query aliases) routes use
       `query_model(Model)` which validates the raw query string the same way.
"""

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError

M = TypeVar("M", bound=BaseModel)

# First element of a RequestValidationError `loc`
LOCATIONS = {"body", "query", "path", "header", "cookie"}


def format_validation_errors(
    errors: Iterable[Mapping[str, Any]],
    location: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Normalise pydantic error dicts.

    >>> format_validation_errors([{"loc": ("body", "name"), "msg": "Field required", "type": "missing"}])
    [{'field': 'name', 'message': 'Field required', 'code': 'missing', 'location': 'body'}]
    """
    details = []
    for err in errors:
        loc = list(err.get("loc", ()))
        where = location
        if loc and loc[0] in LOCATIONS:
            where = loc.pop(0)
        field = ".".join(str(part) for part in loc) or (where or "request")
        entry = {
            "field": field,
            "message": err.get("msg", "Invalid value"),
            "code": err.get("type", "invalid"),
        }
        if where:
            entry["location"] = where
        details.append(entry)
    return details


def validate_model(model: Type[M], data: Any, target: str = "body") -> M:
    """Validate one target, reporting every violation of the schema."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(
            "Validation failed",
            details=format_validation_errors(e.errors(), location=target),
        )


def validate_targets(targets: Mapping[str, Tuple[Type[BaseModel], Any]]) -> Dict[str, BaseModel]:
    """
    Validate independent targets (e.g. body, query, params) and raise once.

    Returns the parsed models keyed by target name when everything is valid.
    """
    parsed: Dict[str, BaseModel] = {}
    details: List[Dict[str, Any]] = []
    for target, (model, data) in targets.items():
        try:
            parsed[target] = model.model_validate(data)
        except PydanticValidationError as e:
            details.extend(format_validation_errors(e.errors(), location=target))
    if details:
        raise ValidationError("Validation failed", details=details)
    return parsed


def query_to_dict(request: Request) -> Dict[str, Any]:
    """Repeated keys become lists; single keys stay scalar."""
    data: Dict[str, Any] = {}
    for key in request.query_params.keys():
        values = request.query_params.getlist(key)
        data[key] = values if len(values) > 1 else values[0]
    return data


def query_model(model: Type[M]) -> Callable[[Request], M]:
    """
    Build a dependency that validates the query string against `model`.

    Usage:
        async def list_examples(query: ExampleListQuery = Depends(query_model(ExampleListQuery))):
    """

    def dependency(request: Request) -> M:
        return validate_model(model, query_to_dict(request), target="query")

    dependency.__name__ = f"query_{model.__name__}"
    return dependency

# Shared schema helpers

from typing import Any, Dict, Type, TypeVar, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ValidationError

from core.errors import ValidationFailed

ModelT = TypeVar("ModelT", bound=BaseModel)

ALLOWED_URL_SCHEMES = ("http", "https")


def field_errors(exc: ValidationError) -> Dict[str, str]:
    """Flatten pydantic errors into {field: message}."""
    fields = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(loc) or "__root__"] = error.get("msg", "Invalid value")
    return fields


def validated(model_cls: Type[ModelT], data: Union[ModelT, BaseModel, Dict[str, Any]]) -> ModelT:
    """Build ``model_cls`` from a dict or another model, raising ValidationFailed on bad input."""
    if isinstance(data, model_cls):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model_cls(**data)
    except ValidationError as e:
        raise ValidationFailed(field_errors(e))


def sanitize_url(value: str) -> str:
    """Trim a user-supplied link and only accept absolute http(s) URLs."""
    url = (value or "").strip()
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES or not parsed.netloc:
        raise ValueError(f"'{url}' is not a valid http or https URL")
    return url

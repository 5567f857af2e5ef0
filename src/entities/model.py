import dataclasses
import enum
import json

from pydantic import BaseModel as PydanticBaseModel
from pydantic import ConfigDict


def _convert_to_serializable(obj):  # noqa: ANN001, ANN202, PLR0911
    """Recursively convert objects to JSON-serializable format."""
    if isinstance(obj, PydanticBaseModel):
        result = {}
        for field_name in obj.__class__.model_fields.keys():
            result[field_name] = _convert_to_serializable(getattr(obj, field_name))
        return result
    if isinstance(obj, (frozenset, set)):
        # Sets are emitted in order so that the serialized form is stable across runs
        return [_convert_to_serializable(item) for item in sorted(obj)]
    if isinstance(obj, dict):
        return {key: _convert_to_serializable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_convert_to_serializable(item) for item in obj]
    if isinstance(obj, enum.Enum):
        return obj.value
    return obj


class BaseModel(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    def dict(self, *args, **kwargs) -> dict:  # noqa: ANN101, ANN003, ANN002, ARG002
        """Converts instance to dict representation of it. Frozensets become sorted lists."""
        return _convert_to_serializable(self)

    def to_json(self) -> str:
        """Compact JSON of `dict()`, the form stored in Redis."""
        return json.dumps(self.dict(), separators=(",", ":"))


class OrderedById(BaseModel):
    """Frozen model whose equality, hashing and ordering are decided by `id` alone."""

    id: str

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OrderedById):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __lt__(self, other: "OrderedById") -> bool:
        return self.id < other.id

    def __le__(self, other: "OrderedById") -> bool:
        return self.id <= other.id

    def __gt__(self, other: "OrderedById") -> bool:
        return self.id > other.id

    def __ge__(self, other: "OrderedById") -> bool:
        return self.id >= other.id


def json_default(o: object) -> str | dict:
    if isinstance(o, PydanticBaseModel):
        return o.dict()
    elif dataclasses.is_dataclass(o) and not isinstance(o, type):
        return dataclasses.asdict(o)
    elif isinstance(o, enum.Enum):
        return o.value
    return str(o)

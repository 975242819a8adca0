"""Core types for NeoDB.

Entity definitions arrive from an upstream generator as camelCase JSON, so every
input model accepts both camelCase aliases and snake_case field names. All types
dump back to JSON for storage as schema snapshots.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from neodb.core.naming import to_snake_case


class FieldType(StrEnum):
    """Closed set of field types an entity may declare."""

    STRING = "string"
    TEXT = "text"
    RICHTEXT = "richtext"
    NUMBER = "number"
    INTEGER = "integer"
    CURRENCY = "currency"
    DECIMAL = "decimal"
    PERCENTAGE = "percentage"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    TIME = "time"
    EMAIL = "email"
    PHONE = "phone"
    URL = "url"
    IMAGE = "image"
    FILE = "file"
    REFERENCE = "reference"
    ENUM = "enum"
    JSON = "json"
    ADDRESS = "address"
    GEOLOCATION = "geolocation"
    RATING = "rating"
    COLOR = "color"
    BARCODE = "barcode"
    SIGNATURE = "signature"
    DURATION = "duration"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid field type values."""
        return [t.value for t in cls]


NUMERIC_FIELD_TYPES = frozenset(
    {
        FieldType.NUMBER,
        FieldType.INTEGER,
        FieldType.CURRENCY,
        FieldType.DECIMAL,
        FieldType.PERCENTAGE,
        FieldType.RATING,
        FieldType.DURATION,
    }
)

INTEGER_FIELD_TYPES = frozenset(
    {FieldType.NUMBER, FieldType.INTEGER, FieldType.RATING, FieldType.DURATION}
)

JSON_FIELD_TYPES = frozenset({FieldType.JSON, FieldType.ADDRESS, FieldType.GEOLOCATION})


class RelationType(StrEnum):
    """Relationship kinds between entities."""

    ONE_TO_ONE = "one_to_one"  # e.g., User -> Profile
    ONE_TO_MANY = "one_to_many"  # e.g., Client -> Invoices
    MANY_TO_ONE = "many_to_one"  # e.g., Invoice -> Client
    MANY_TO_MANY = "many_to_many"  # e.g., Product <-> Tag

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid relation type values."""
        return [t.value for t in cls]


class DeleteMode(StrEnum):
    """What ``delete`` does to a record."""

    HARD = "hard"  # DELETE the row
    SOFT = "soft"  # Set deleted_at, keep the row

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid delete mode values."""
        return [m.value for m in cls]


class FilterOperator(StrEnum):
    """Operators accepted by QueryFilter."""

    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    LIKE = "like"
    ILIKE = "ilike"
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"
    BETWEEN = "between"
    JSON_CONTAINS = "jsonContains"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid operator values."""
        return [o.value for o in cls]


class _InputModel(BaseModel):
    """Base for models fed by camelCase JSON."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


# === Entity Model ===


class FieldValidation(_InputModel):
    """Declarative validation rules for a field."""

    min: float | None = None
    max: float | None = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    message: str | None = None
    validators: list[str] = Field(
        default_factory=list, description="Named custom validators, e.g. 'credit_card'"
    )


class ReferenceConfig(_InputModel):
    """Points a reference field at another entity."""

    target_entity: str = Field(
        ...,
        validation_alias=AliasChoices("targetEntity", "target_entity", "entity"),
        description="Target entity id or name",
    )
    display_field: str = Field(default="name", description="Field shown as the label")
    relationship: RelationType = Field(default=RelationType.MANY_TO_ONE)
    cascade_delete: bool = Field(
        default=False, description="ON DELETE CASCADE instead of SET NULL"
    )


class ComputedConfig(_InputModel):
    """Marks a field as derived from other fields."""

    expression: str
    dependencies: list[str] = Field(default_factory=list)


class FieldDefinition(_InputModel):
    """A typed attribute of an entity."""

    id: str = Field(..., description="Unique within the entity, stable across renames")
    name: str = Field(..., description="Field name (camelCase or snake_case)")
    type: FieldType = Field(default=FieldType.STRING)
    required: bool = False
    unique: bool = False
    indexed: bool = False
    default_value: Any = None
    validation: FieldValidation | None = None
    enum_options: list[str] = Field(default_factory=list)
    reference: ReferenceConfig | None = None
    computed: ComputedConfig | None = None
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_enum_options(cls, data: Any) -> Any:
        """Accept enum options given as ``{"value": ..., "label": ...}`` objects."""
        if isinstance(data, dict):
            key = "enumOptions" if "enumOptions" in data else "enum_options"
            options = data.get(key)
            if isinstance(options, list):
                data = {
                    **data,
                    key: [o.get("value") if isinstance(o, dict) else o for o in options],
                }
        return data

    @property
    def is_computed(self) -> bool:
        """Computed fields never produce a physical column."""
        return self.computed is not None

    @property
    def column_name(self) -> str:
        """Physical column name for this field."""
        return to_snake_case(self.name)


class TimestampPolicy(_InputModel):
    """Which bookkeeping timestamp columns a table carries."""

    created_at: bool = True
    updated_at: bool = True
    deleted_at: bool = False


class QuerySort(_InputModel):
    """A sort specification."""

    field: str
    direction: Literal["asc", "desc"] = "asc"
    nulls: Literal["first", "last"] | None = None


class RelationshipSpec(_InputModel):
    """An explicitly declared relationship on an entity."""

    name: str
    type: RelationType = Field(default=RelationType.MANY_TO_ONE)
    target_entity: str = Field(
        ..., validation_alias=AliasChoices("targetEntity", "target_entity", "target")
    )
    foreign_key: str | None = None
    back_reference: str | None = None


class EntityDefinition(_InputModel):
    """Abstract description of a data type. Maps to one physical table."""

    id: str
    name: str
    plural_name: str | None = None
    fields: list[FieldDefinition] = Field(default_factory=list)
    relationships: list[RelationshipSpec] = Field(default_factory=list)
    timestamps: TimestampPolicy = Field(default_factory=TimestampPolicy)
    delete_mode: DeleteMode = Field(default=DeleteMode.HARD)
    default_sort: QuerySort | None = None
    page_size: int | None = Field(default=None, ge=1, le=1000)
    description: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _lift_crud_block(cls, data: Any) -> Any:
        """Lift ``crud.read``/``crud.delete`` settings from generator output."""
        if not isinstance(data, dict) or not isinstance(data.get("crud"), dict):
            return data
        data = dict(data)
        crud = data.pop("crud")
        read = crud.get("read") or {}
        if read.get("defaultSort") and "defaultSort" not in data:
            data["defaultSort"] = read["defaultSort"]
        if read.get("pageSize") and "pageSize" not in data:
            data["pageSize"] = read["pageSize"]
        delete = crud.get("delete") or {}
        if delete.get("softDelete") and "deleteMode" not in data:
            data["deleteMode"] = DeleteMode.SOFT.value
        return data

    @model_validator(mode="after")
    def _check_fields(self) -> EntityDefinition:
        seen: set[str] = set()
        for field in self.fields:
            if field.id in seen:
                raise ValueError(f"Duplicate field id '{field.id}' on entity '{self.name}'")
            seen.add(field.id)
            if field.type == FieldType.REFERENCE and field.reference is None:
                raise ValueError(
                    f"Reference field '{field.name}' on '{self.name}' needs a 'reference' block"
                )
        return self

    @property
    def table_name(self) -> str:
        """Physical table name derived from the plural name."""
        if self.plural_name:
            return to_snake_case(self.plural_name)
        return f"{to_snake_case(self.name)}s"

    @property
    def has_deleted_at(self) -> bool:
        """Whether the table carries a nullable deleted_at column."""
        return self.timestamps.deleted_at or self.delete_mode == DeleteMode.SOFT

    @property
    def stored_fields(self) -> list[FieldDefinition]:
        """Fields backed by a physical column."""
        return [f for f in self.fields if not f.is_computed and f.name != "id"]

    @property
    def computed_fields(self) -> list[FieldDefinition]:
        """Fields evaluated after fetch."""
        return [f for f in self.fields if f.is_computed]

    def get_field(self, name: str) -> FieldDefinition | None:
        """Look up a field by name, column name or id."""
        for field in self.fields:
            if name in (field.name, field.column_name, field.id):
                return field
        return None

    def snapshot(self) -> dict[str, Any]:
        """JSON shape stored as the diffing baseline."""
        return self.model_dump(mode="json", by_alias=True)


# === Relations ===


class RelationDefinition(BaseModel):
    """A resolved relation between two entities (output format)."""

    name: str
    type: RelationType
    source_entity: str
    target_entity: str
    foreign_key: str
    back_reference: str | None = None
    junction_table: str | None = None
    source_column: str | None = None  # junction column pointing at the source
    target_column: str | None = None  # junction column pointing at the target
    display_field: str = "name"

    model_config = {"use_enum_values": True}


# === Query Shapes ===


class QueryFilter(_InputModel):
    """A filter condition."""

    field: str
    operator: FilterOperator = Field(default=FilterOperator.EQ)
    value: Any = None


class QueryPagination(_InputModel):
    """Page-based pagination."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=25, ge=1, le=1000)

    @property
    def offset(self) -> int:
        """Row offset of the first record on this page."""
        return (self.page - 1) * self.page_size


class FindOptions(_InputModel):
    """Options accepted by find_many."""

    filters: list[QueryFilter] = Field(default_factory=list)
    sorts: list[QuerySort] = Field(default_factory=list)
    pagination: QueryPagination | None = None
    include: list[str | dict[str, Any]] = Field(default_factory=list)
    include_deleted: bool = False


class PaginatedResult(BaseModel):
    """A page of records plus totals."""

    data: list[dict[str, Any]]
    total_count: int
    page: int
    page_size: int
    has_more: bool

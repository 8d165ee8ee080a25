"""Base model shared by all persisted records.

Records are stored and broadcast with camelCase keys while Python code uses
snake_case attributes.
"""

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic.alias_generators import to_camel


class CamelCaseModel(BaseModel):
    """Pydantic model that serializes with camelCase aliases.

    Accepts both snake_case field names and camelCase aliases on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> str:
        """Serialize with camelCase keys, indented for on-disk storage."""
        return self.model_dump_json(by_alias=True, indent=2)

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Base for caller-facing payloads.

    Fields are snake_case in Python and camelCase on the wire; ORM rows can be
    validated directly (``from_attributes``).
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_api(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

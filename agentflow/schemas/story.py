from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoryPayload(BaseModel):
    """One entry of a STORIES_JSON array."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: str
    acceptance_criteria: list[str] = Field(alias="acceptanceCriteria", min_length=1)

    @field_validator("id", "title")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class LoopConfig(BaseModel):
    """Loop settings of a loop-typed step.

    Accepts both snake_case and the camelCase keys used in workflow files
    (``verifyEach``, ``verifyStep``).
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    over: Literal["stories"] = "stories"
    completion: Literal["all_done"] = "all_done"
    fresh_session: bool = False
    verify_each: bool = False
    verify_step: Optional[str] = None

    @property
    def verify_target(self) -> Optional[str]:
        if self.verify_each and self.verify_step:
            return self.verify_step
        return None


class StepSpec(BaseModel):
    id: str = Field(min_length=1)
    agent: str = Field(min_length=1)
    type: Literal["single", "loop"] = "single"
    loop: Optional[LoopConfig] = None
    input: str = ""
    expects: str = ""
    max_retries: Optional[int] = Field(default=None, ge=0)


class WorkflowSpec(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    steps: list[StepSpec] = Field(min_length=1)
    context: dict[str, str] = Field(default_factory=dict)


def load_loop_config(raw: Optional[dict]) -> Optional[LoopConfig]:
    if not raw:
        return None
    return LoopConfig.model_validate(raw)

"""Command definitions shared by every platform.

Names and descriptions are validated against the strictest platform limits
so the same command can be pushed everywhere unchanged.
"""

from pydantic import BaseModel, ConfigDict, Field

COMMAND_NAME_MAX_LENGTH = 32
COMMAND_DESCRIPTION_MAX_LENGTH = 200
COMMAND_NAME_PATTERN = r"^[0-9A-Za-z_]+$"


class CommandField(BaseModel):
    """A single value a command collects from the user."""

    name: str
    description: str = ""
    required: bool = False


class Command(BaseModel):
    """A bot command registered with all platforms.

    Assignment is validated too, so renaming a command to something a
    platform would reject fails immediately.
    """

    model_config = ConfigDict(validate_assignment=True)

    name: str = Field(max_length=COMMAND_NAME_MAX_LENGTH, pattern=COMMAND_NAME_PATTERN)
    description: str = Field(default="", max_length=COMMAND_DESCRIPTION_MAX_LENGTH)
    admin_only: bool = False
    fields: list[CommandField] = Field(default_factory=list)

    @property
    def required_fields(self) -> list[CommandField]:
        return [f for f in self.fields if f.required]

    def get_field(self, name: str) -> CommandField | None:
        for f in self.fields:
            if f.name.lower() == name.lower():
                return f
        return None

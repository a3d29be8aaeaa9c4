"""
Character data model and storage interface.

A character is the persona the user talks to. Its 'system_config' selects the
model, sampling parameters and the functions the character may call.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from roleplay_runtime.llms.base import SystemConfig
from roleplay_runtime.utils.database import generate_uid


class Character(BaseModel):
    id: str = Field(default_factory=generate_uid)
    name: str
    description: str = ""
    prompt: str = ""
    system_config: SystemConfig = Field(default_factory=SystemConfig)

    def system_prompt(self) -> str:
        """The system message sent ahead of the history."""
        parts = [self.system_config.system_prompt, f"You are {self.name}. {self.description}".strip(), self.prompt]
        return "\n\n".join(part for part in parts if part)


class CharacterDatabase(ABC):
    """Abstract repository for 'Character' records."""

    @abstractmethod
    async def create_character(self, character: Character) -> Character:
        pass

    @abstractmethod
    async def get_character_by_id(self, character_id: str) -> Character:
        """Return the character or raise 'NotFound'."""
        pass

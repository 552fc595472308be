from dataclasses import dataclass
from typing import Literal


Role = Literal["customer", "provider"]
ROLES = ("customer", "provider")


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role

    @property
    def is_provider(self) -> bool:
        return self.role == "provider"

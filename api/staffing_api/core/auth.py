from dataclasses import dataclass, field
from enum import Enum


class PrincipalType(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    groups: set[str] = field(default_factory=set)
    scopes: set[str] = field(default_factory=set)

    def in_any_group(self, allowed: set[str]) -> bool:
        return any(group.lower() in allowed for group in self.groups)


def parse_group_claim(raw: object) -> set[str]:
    """Accept both the comma-joined and the list form of a groups claim."""
    if isinstance(raw, str):
        return {chunk.strip() for chunk in raw.split(",") if chunk.strip()}
    if isinstance(raw, (list, tuple, set)):
        return {item.strip() for item in raw if isinstance(item, str) and item.strip()}
    return set()

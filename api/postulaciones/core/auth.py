from dataclasses import dataclass

DIRECTOR_ROLES = frozenset({"admin", "organizer", "editor"})


def is_director_role(role: str | None) -> bool:
    return role in DIRECTOR_ROLES


@dataclass(frozen=True, slots=True)
class Actor:
    """Verified caller identity passed explicitly into every repository operation."""

    id: int
    role: str

    @property
    def is_director(self) -> bool:
        return is_director_role(self.role)

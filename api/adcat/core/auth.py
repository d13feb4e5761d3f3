from dataclasses import dataclass

CATEGORIES_READ = "categories:read"
CATEGORIES_WRITE = "categories:write"


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    email: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

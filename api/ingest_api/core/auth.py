from dataclasses import dataclass

CRAWL_READ = "crawl:read"
CRAWL_WRITE = "crawl:write"
CRAWL_ADMIN = "crawl:admin"
FACTS_WRITE = "facts:write"


@dataclass(slots=True)
class Principal:
    module_id: str
    scopes: set[str]
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")

from __future__ import annotations


ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "staff": 2,
    "manager": 3,
    "admin": 4,
    "owner": 5,
}


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_rank(role: str | None) -> int:
    # Unknown roles rank below every real role.
    if not role:
        return 0
    return ROLE_ORDER.get(role.strip().lower(), 0)


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return role_rank(role) >= role_rank(minimum_role)


def parse_permissions(raw: str | None) -> list[str]:
    # Permissions arrive as a comma list; keep order, drop blanks and duplicates.
    if not raw:
        return []
    seen: list[str] = []
    for item in raw.split(","):
        permission = item.strip()
        if permission and permission not in seen:
            seen.append(permission)
    return seen

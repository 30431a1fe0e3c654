"""Request dependencies shared by the routers."""

from fastapi import Header, HTTPException, Request, status

from autodidact.api.rate_limit import task_limiter


async def get_github_token(
    x_github_token: str | None = Header(default=None, alias="X-GitHub-Token"),
) -> str | None:
    """Per-request GitHub token; None when the header is absent or blank."""
    if x_github_token is None:
        return None
    token = x_github_token.strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    return token or None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def enforce_task_rate_limit(request: Request) -> None:
    if not task_limiter.is_allowed(client_ip(request)):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
        )

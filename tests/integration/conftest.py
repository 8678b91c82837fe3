"""
Integration test helper utilities.

Shared payloads and operation factories for tests that drive the executor
against mocked HTTP dependencies.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    import httpx

DATASTORE_URL = "https://datastore.internal/dbs/app/colls/profiles/docs/user-1"
INFERENCE_URL = "https://inference.internal/v1/score"
SECRETS_URL = "https://secrets.internal/secrets/db-password"


def mock_profile_document(user_id: str = "user-1", plan: str = "pro") -> dict:
    """Create a mock datastore document."""
    return {"id": user_id, "plan": plan, "_etag": '"00000000-0000"'}


def mock_score_response(score: float = 0.87, model: str = "risk-v2") -> dict:
    """Create a mock inference response."""
    return {"model": model, "score": score}


def get_json(
    client: httpx.AsyncClient, url: str
) -> Callable[[], Awaitable[Any]]:
    """Create an operation that GETs a URL and decodes the JSON body.

    Non-2xx responses raise ``httpx.HTTPStatusError``.
    """

    async def operation() -> Any:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()

    return operation

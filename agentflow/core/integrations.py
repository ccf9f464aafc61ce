"""Integration collaborator interface used by node handlers.

Concrete chat, email, document-store, vector-search and LLM clients live outside
the engine; handlers only depend on the ``IntegrationClient`` protocol.
``DryRunIntegrations`` records calls and returns synthetic results, which is what
the CLI ``--dry-run`` mode and the test suite use.
"""

import logging
import uuid
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class IntegrationClient(Protocol):
    """Third-party effects available to node handlers."""

    async def call_llm(
        self, prompt: str, model: str, temperature: float, max_tokens: int
    ) -> dict[str, Any]:
        """Returns ``{"response", "model", "tokens_used", "cost"}``."""
        ...

    async def search_memory(self, query: str, top_k: int, threshold: float) -> list[Any]: ...

    async def send_slack_message(
        self, channel: str, message: str, thread_reply: bool = False
    ) -> dict[str, Any]:
        """Returns ``{"message_id", "timestamp"}``."""
        ...

    async def create_notion_page(
        self, database: str, title: str | None, properties: dict[str, Any]
    ) -> dict[str, Any]:
        """Returns ``{"page_id", "url"}``."""
        ...

    async def send_email(
        self, to: list[str], subject: str, body: str, html: bool = False
    ) -> dict[str, Any]:
        """Returns ``{"message_id"}``."""
        ...

    async def call_webhook(
        self, url: str, method: str, headers: dict[str, str], body: Any
    ) -> dict[str, Any]:
        """Returns ``{"status", "response"}``."""
        ...


class DryRunIntegrations:
    """
    IntegrationClient that performs no external I/O.

    Every call is appended to ``calls`` as ``(method, kwargs)``. Canned results can
    be supplied per method via ``responses``; an exception registered in
    ``failures`` is raised instead of returning.
    """

    def __init__(
        self,
        responses: dict[str, Any] | None = None,
        failures: dict[str, Exception] | None = None,
    ):
        self.responses = dict(responses or {})
        self.failures = dict(failures or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _record(self, method: str, default: Any, /, **kwargs: Any) -> Any:
        self.calls.append((method, kwargs))
        logger.debug(f"Dry-run integration call: {method}")
        if method in self.failures:
            raise self.failures[method]
        return self.responses.get(method, default)

    def calls_to(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def call_llm(self, prompt, model, temperature, max_tokens):
        return self._record(
            "call_llm",
            {"response": f"[dry-run] {prompt}", "model": model, "tokens_used": 0, "cost": 0.0},
            prompt=prompt,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def search_memory(self, query, top_k, threshold):
        return self._record("search_memory", [], query=query, top_k=top_k, threshold=threshold)

    async def send_slack_message(self, channel, message, thread_reply=False):
        return self._record(
            "send_slack_message",
            {"message_id": f"dry-{uuid.uuid4().hex[:8]}", "timestamp": "0"},
            channel=channel,
            message=message,
            thread_reply=thread_reply,
        )

    async def create_notion_page(self, database, title, properties):
        return self._record(
            "create_notion_page",
            {"page_id": f"dry-{uuid.uuid4().hex[:8]}", "url": None},
            database=database,
            title=title,
            properties=properties,
        )

    async def send_email(self, to, subject, body, html=False):
        return self._record(
            "send_email",
            {"message_id": f"dry-{uuid.uuid4().hex[:8]}"},
            to=to,
            subject=subject,
            body=body,
            html=html,
        )

    async def call_webhook(self, url, method, headers, body):
        return self._record(
            "call_webhook",
            {"status": 200, "response": None},
            url=url,
            method=method,
            headers=headers,
            body=body,
        )

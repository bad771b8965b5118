"""
Policy document generation and the welcome-kit trigger.

The policy PDF is rendered from a Jinja2 template with WeasyPrint, uploaded to
the policies bucket in Supabase Storage, and referenced by its public URL.
The welcome kit is produced by the `generate-welcome-kit` edge function; this
module only invokes it.

Both calls are bounded: `call_with_timeout` runs them on a worker thread and
gives up after the configured number of seconds.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Protocol, TypeVar

from jinja2 import Environment, FileSystemLoader

from domain.client import Client, Product
from domain.errors import IntegrationError
from domain.policy import Policy
from domain.sale import Sale
from domain.time import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TEMPLATES_DIR = Path(__file__).parent / "templates"

_jinja_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATES_DIR)),
    autoescape=True,
)


class DocumentGenerator(Protocol):
    def generate_policy_document(
        self,
        policy: Policy,
        sale: Sale,
        client: Client,
        product: Product,
    ) -> str:
        """Produce the policy document and return its URL."""
        ...


class WelcomeKitTrigger(Protocol):
    def trigger(self, payload: Mapping[str, Any]) -> Mapping[str, Any]: ...


def call_with_timeout(func: Callable[[], T], timeout_seconds: float, what: str) -> T:
    """
    Run `func` and wait at most `timeout_seconds` for it.

    Raises:
        IntegrationError: the call failed or did not finish in time. The worker
        thread is not interrupted; its late result is discarded.
    """

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bounded-call")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout as exc:
        raise IntegrationError(f"{what} timed out after {timeout_seconds}s") from exc
    except IntegrationError:
        raise
    except Exception as exc:
        raise IntegrationError(f"{what} failed: {exc}") from exc
    finally:
        executor.shutdown(wait=False)


def render_policy_html(
    policy: Policy,
    sale: Sale,
    client: Client,
    product: Product,
    generated_at: datetime,
) -> str:
    template = _jinja_env.get_template("policy_document.html")
    return template.render(
        policy=policy,
        sale=sale,
        client=client,
        product=product,
        generated_at=generated_at.strftime("%Y-%m-%d %H:%M UTC"),
    )


class SupabaseDocumentGenerator:
    """Renders the policy PDF and stores it in a Supabase Storage bucket."""

    def __init__(self, client: Any, bucket: str = "policies", clock: Optional[Callable[[], datetime]] = None) -> None:
        self._client = client
        self._bucket = bucket
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else utc_now()

    def generate_policy_document(
        self,
        policy: Policy,
        sale: Sale,
        client: Client,
        product: Product,
    ) -> str:
        html = render_policy_html(policy, sale, client, product, self._now())

        from weasyprint import HTML

        pdf_bytes = HTML(string=html).write_pdf()

        file_name = f"policy_{policy.policy_number}.pdf"
        bucket = self._client.storage.from_(self._bucket)
        bucket.upload(
            file_name,
            pdf_bytes,
            {"content-type": "application/pdf", "upsert": "true"},
        )
        url = bucket.get_public_url(file_name)
        logger.info(
            "Policy document stored",
            extra={"policy_number": policy.policy_number, "bucket": self._bucket, "bytes": len(pdf_bytes)},
        )
        return str(url)


class SupabaseWelcomeKitTrigger:
    """Invokes the welcome-kit edge function."""

    FUNCTION_NAME = "generate-welcome-kit"

    def __init__(self, client: Any) -> None:
        self._client = client

    def trigger(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        response = self._client.functions.invoke(
            self.FUNCTION_NAME,
            invoke_options={"body": dict(payload)},
        )
        if isinstance(response, Mapping):
            return response
        return {"invoked": self.FUNCTION_NAME}


__all__ = [
    "DocumentGenerator",
    "WelcomeKitTrigger",
    "call_with_timeout",
    "render_policy_html",
    "SupabaseDocumentGenerator",
    "SupabaseWelcomeKitTrigger",
]

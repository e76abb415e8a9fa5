"""OpenAI Assistants client used for prompt writing.

One call = one thread: the trigger text is posted as the user message, the
run is polled until it leaves ``queued``/``in_progress`` and the first
assistant text block is returned.  Polling is a tenacity combinator bounded
by ``max_polls`` instead of a hand-written sleep loop.
"""

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from generapix.errors import AssistantRunError, AssistantTimeoutError, EmptyAssistantResponseError

logger = logging.getLogger(__name__)

RUN_PENDING_STATUSES = frozenset({"queued", "in_progress"})
RUN_COMPLETED = "completed"

DEFAULT_MAX_POLLS = 60
DEFAULT_POLL_INTERVAL = 1.0


@dataclass
class AssistantReply:
    """Text produced by one assistant run."""

    text: str
    thread_id: str
    run_id: str
    assistant_id: str


def _still_running(run) -> bool:
    return getattr(run, "status", None) in RUN_PENDING_STATUSES


class AssistantClient:
    """Thin wrapper over ``AsyncOpenAI.beta.threads``.

    The OpenAI client is injected so the same wrapper runs against the real
    API, a proxy base URL or a test double.
    """

    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        max_polls: int = DEFAULT_MAX_POLLS,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        if max_polls < 1:
            raise ValueError("max_polls must be at least 1")
        self._client = client
        self._max_polls = max_polls
        self._poll_interval = poll_interval

    async def submit(self, prompt: str, assistant_id: str):
        """Create a thread holding ``prompt`` and start a run on it."""
        run = await self._client.beta.threads.create_and_run(
            assistant_id=assistant_id,
            thread={"messages": [{"role": "user", "content": prompt}]},
        )
        logger.debug("Started assistant run %s on thread %s", run.id, run.thread_id)
        return run

    async def _retrieve(self, run_id: str, thread_id: str):
        return await self._client.beta.threads.runs.retrieve(run_id, thread_id=thread_id)

    async def wait_for_run(self, run):
        """Poll ``run`` until it is no longer pending.

        Raises:
            AssistantTimeoutError: The run was still pending after ``max_polls`` polls.
            AssistantRunError: The run ended in any status other than ``completed``.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_polls),
            wait=wait_fixed(self._poll_interval),
            retry=retry_if_result(_still_running),
        )
        try:
            finished = await retrying(self._retrieve, run.id, run.thread_id)
        except RetryError as exc:
            last = exc.last_attempt.result()
            raise AssistantTimeoutError(
                run.id, self._max_polls, getattr(last, "status", None)
            ) from None

        if finished.status != RUN_COMPLETED:
            last_error = getattr(finished, "last_error", None)
            detail = getattr(last_error, "message", None) if last_error else None
            raise AssistantRunError(finished.id, finished.status, detail)
        return finished

    async def fetch_reply(self, thread_id: str) -> str:
        """Return the first text block of the first assistant message in the thread."""
        messages = await self._client.beta.threads.messages.list(thread_id)
        for message in messages.data:
            if message.role != "assistant":
                continue
            if message.content and message.content[0].type == "text":
                return message.content[0].text.value
            break
        raise EmptyAssistantResponseError(f"No text response from assistant on thread {thread_id}")

    async def generate(self, prompt: str, assistant_id: str) -> AssistantReply:
        run = await self.submit(prompt, assistant_id)
        finished = await self.wait_for_run(run)
        text = await self.fetch_reply(finished.thread_id)
        return AssistantReply(
            text=text,
            thread_id=finished.thread_id,
            run_id=finished.id,
            assistant_id=assistant_id,
        )

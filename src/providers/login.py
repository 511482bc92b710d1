import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from state.models import Credential, utcnow

logger = logging.getLogger(__name__)


class LoginPrompt(BaseModel):
    """What the user has to do to finish signing in."""

    service_id: str
    method: str  # "browser" or "device_code"
    url: str
    user_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    started_at: datetime = Field(default_factory=utcnow)


class LoginCancelled(Exception):
    pass


class LoginFlow:
    """One pending interactive login.

    Completion is signalled through a future: either ``complete()`` is called
    with the new credential (browser hand-back) or a background ``poller``
    coroutine returns one (device authorization). ``wait()`` is bounded by an
    explicit timeout and ``cancel()`` stops the poller mid-wait.
    """

    def __init__(
        self,
        prompt: LoginPrompt,
        on_success: Callable[[Credential], Awaitable[None]],
        poller: Optional[Callable[[], Awaitable[Credential]]] = None,
    ) -> None:
        self.prompt = prompt
        self._on_success = on_success
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._task: Optional[asyncio.Task] = None
        if poller is not None:
            self._task = asyncio.create_task(self._run_poller(poller))

    @property
    def done(self) -> bool:
        return self._future.done()

    async def _run_poller(self, poller: Callable[[], Awaitable[Credential]]) -> None:
        try:
            credential = await poller()
        except asyncio.CancelledError:
            self._set_exception(LoginCancelled(f"{self.prompt.service_id} login cancelled"))
            raise
        except Exception as e:
            logger.warning("%s login failed: %s", self.prompt.service_id, e)
            self._set_exception(e)
            return
        await self.complete(credential)

    async def complete(self, credential: Credential) -> None:
        if self._future.done():
            return
        await self._on_success(credential)
        if not self._future.done():
            self._future.set_result(credential)
        logger.info("%s login completed", self.prompt.service_id)

    def _set_exception(self, exc: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(exc)
            # mark retrieved so an unobserved failure does not warn at GC time
            self._future.exception()

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._set_exception(LoginCancelled(f"{self.prompt.service_id} login cancelled"))

    async def wait(self, timeout: float) -> Credential:
        """Wait for completion. Times out with asyncio.TimeoutError, leaving the flow pending."""
        return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout)

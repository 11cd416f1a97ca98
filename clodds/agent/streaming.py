"""Progressive delivery of one reply through a chat transport.

With an editable transport the reply is sent once and then edited in
place as text arrives, at most once per min_interval. Edits that arrive
faster are buffered and go out with the next flush or finalize().
Non-editable transports get the full text once, at finalize(). An
editable transport whose send() returns no message id is treated as
non-editable from then on: only the text not yet delivered goes out, once.
"""

from __future__ import annotations

import logging
import time

from clodds.agent.protocols import Transport

logger = logging.getLogger(__name__)

RUNNING_INDICATOR = "\U0001f527"  # wrench
FINISHED_INDICATOR = "✅"  # check mark


class StreamingReply:
    """Manages progressive message editing for one reply."""

    def __init__(
        self,
        transport: Transport,
        *,
        min_interval: float = 1.2,
        max_length: int = 4000,
    ) -> None:
        self._transport = transport
        self._editable = bool(getattr(transport, "supports_edit", False))
        self.message_id: str | int | None = None
        self.text = ""
        self._base_text = ""  # text without tool indicators
        self._tools: dict[str, bool] = {}  # tool_name -> finished
        self._last_edit = 0.0
        self._min_interval = min_interval
        self._max_length = max_length
        self._pending = False
        self._sent = False
        self._shown = ""  # last text the transport holds
        self._delivered = ""  # text already sent as plain messages after editing stopped

    @property
    def has_sent(self) -> bool:
        """True once anything reached the user."""
        return self._sent

    @property
    def base_text(self) -> str:
        return self._base_text

    async def append_text(self, text: str) -> None:
        """Append a text delta and update the display."""
        await self.update(self._base_text + text)

    async def update(self, new_text: str) -> None:
        """Replace the reply text. Creates on first flush, edits after."""
        self._base_text = new_text
        self.text = self._build_display_text()
        if not self._editable:
            self._pending = True
            return
        now = time.time()
        if now - self._last_edit < self._min_interval:
            self._pending = True
            return
        await self._send_or_edit()

    async def tool_running(self, tool_name: str) -> None:
        """One notice that a slow tool is still running."""
        self._tools[tool_name] = False
        if not self._editable:
            await self._send_notice(f"{RUNNING_INDICATOR} Running {tool_name}...")
            return
        self.text = self._build_display_text()
        await self._send_or_edit()

    async def tool_finished(self, tool_name: str) -> None:
        """Matching notice once a tool that got tool_running() is done."""
        if tool_name not in self._tools:
            return
        self._tools[tool_name] = True
        if not self._editable:
            await self._send_notice(f"{FINISHED_INDICATOR} {tool_name} finished")
            return
        self.text = self._build_display_text()
        await self._send_or_edit()

    async def fail(self, message: str) -> None:
        """Surface a failure message, keeping whatever was already shown."""
        self._tools.clear()
        if self._editable and self._sent:
            self._base_text = f"{self._base_text}\n\n{message}" if self._base_text else message
        else:
            self._base_text = message
        self.text = self._build_display_text()
        await self._send_or_edit()

    async def finalize(self) -> None:
        """Send the final version: base text only, no tool indicators."""
        self._tools.clear()
        self.text = self._build_display_text()
        if self._pending or not self._sent or self.text != self._shown:
            await self._send_or_edit()

    def _build_display_text(self) -> str:
        parts = [self._base_text] if self._base_text else []
        if self._tools:
            indicators = [
                f"{FINISHED_INDICATOR} {name}" if done else f"{RUNNING_INDICATOR} {name}..."
                for name, done in self._tools.items()
            ]
            parts.append(" ".join(indicators))
        return "\n\n".join(parts)

    async def _send_notice(self, text: str) -> None:
        await self._transport.send(text)
        self._sent = True

    async def _send_or_edit(self) -> None:
        if not self.text.strip():
            return

        display_text = self.text

        if not self._editable:
            unsent = display_text
            if self._delivered and display_text.startswith(self._delivered):
                unsent = display_text[len(self._delivered):]
            if unsent.strip():
                for start in range(0, len(unsent), self._max_length):
                    await self._transport.send(unsent[start:start + self._max_length])
                self._sent = True
            if self._delivered:
                self._delivered = display_text
            self._shown = display_text
            self._pending = False
            return

        # Roll full messages over; later edits address the newest one only.
        while len(display_text) > self._max_length:
            head = display_text[:self._max_length] + "\n\n(continued...)"
            if self.message_id is None:
                await self._transport.send(head)
            else:
                await self._transport.edit(self.message_id, head)
            self.message_id = None
            display_text = display_text[self._max_length:]
            self._base_text = self._base_text[self._max_length:]
            self.text = display_text
            self._sent = True

        if self.message_id is None:
            self.message_id = await self._transport.send(display_text)
            if self.message_id is None:
                # No id to edit: buffer the rest and send it once at finalize().
                logger.debug("Transport returned no message id, editing disabled for this reply")
                self._editable = False
                self._delivered = display_text
        else:
            await self._transport.edit(self.message_id, display_text)
        self._sent = True
        self._shown = display_text
        self._last_edit = time.time()
        self._pending = False

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from .sse import DATA_PREFIX, DONE_LINE
from .transcoder import FINISH_STOP, DecodedIncrement


TRAILER_SEPARATOR = "\n\n"


class InjectionState(str, Enum):
    FORWARDING = "forwarding"
    WITHHOLDING = "withholding"
    DRAINING = "draining"


@dataclass
class FixedContentDelta:
    content: str
    role: str = ""


@dataclass
class FixedContentChoice:
    delta: FixedContentDelta
    index: int = 0
    finish_reason: str = FINISH_STOP


@dataclass
class FixedContentMessage:
    id: str
    created: int
    choices: List[FixedContentChoice] = field(default_factory=list)
    object: str = "chat.completion"

    def to_line(self) -> str:
        body = {
            "id": self.id,
            "object": self.object,
            "created": self.created,
            "choices": [
                {
                    "index": choice.index,
                    "finish_reason": choice.finish_reason,
                    "delta": asdict(choice.delta),
                }
                for choice in self.choices
            ],
        }
        return DATA_PREFIX + json.dumps(body, ensure_ascii=False, separators=(",", ":"))


def _new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def build_fixed_content_line(
    fixed_content: str,
    *,
    id_factory: Callable[[], str] = _new_completion_id,
    clock: Callable[[], float] = time.time,
) -> str:
    message = FixedContentMessage(
        id=id_factory(),
        created=int(clock()),
        choices=[FixedContentChoice(delta=FixedContentDelta(content=TRAILER_SEPARATOR + fixed_content))],
    )
    return message.to_line()


class FixedContentInjector:
    """
    Hold back the line that finishes the stream with ``stop`` so the trailer
    can be emitted in front of it.

    ``accept`` returns the lines to forward for each decoded line. Once the
    stop line has been released the injector is draining: it accepts no more
    input and ``finish`` yields the sentinel. ``finish`` also yields the
    sentinel when no stop was ever seen.
    """

    def __init__(
        self,
        fixed_content: str = "",
        *,
        id_factory: Callable[[], str] = _new_completion_id,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fixed_content = fixed_content
        self._id_factory = id_factory
        self._clock = clock
        self.state = InjectionState.FORWARDING
        self.pending_stop_line: Optional[str] = None
        self.trailer_sent = False
        self._finished = False

    @property
    def draining(self) -> bool:
        return self.state is InjectionState.DRAINING

    def accept(self, line: str, increment: DecodedIncrement) -> List[str]:
        if self.state is not InjectionState.FORWARDING:
            raise RuntimeError(f"injector no longer accepts input ({self.state.value})")
        if not increment.is_stop:
            return [line]

        self.pending_stop_line = line
        self.state = InjectionState.WITHHOLDING
        return self._release()

    def finish(self) -> List[str]:
        if self._finished:
            return []
        self._finished = True
        self.state = InjectionState.DRAINING
        return [DONE_LINE]

    def _release(self) -> List[str]:
        out: List[str] = []
        if self._fixed_content:
            out.append(
                build_fixed_content_line(
                    self._fixed_content,
                    id_factory=self._id_factory,
                    clock=self._clock,
                )
            )
            self.trailer_sent = True
        out.append(self.pending_stop_line)
        self.state = InjectionState.DRAINING
        return out

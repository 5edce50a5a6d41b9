"""Pending questions from the model to the user.

The ``ask_human`` tool calls :meth:`HumanInputBroker.request`, which
suspends until the user answers through :meth:`HumanInputBroker.answer`.
Only one request is pending at a time; a new request cancels the old one.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

logger = logging.getLogger(__name__)

FieldType = Literal["text", "select", "radio", "checkbox"]
Answer = dict[str, str | list[str]]


@dataclass
class HumanInputField:
    key: str
    label: str
    type: FieldType = "text"
    options: list[str] | None = None
    required: bool = False


@dataclass
class HumanInputRequest:
    question: str
    fields: list[HumanInputField]
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    future: asyncio.Future | None = field(default=None, repr=False)


Listener = Callable[[HumanInputRequest | None], None]


class HumanInputCancelled(Exception):
    pass


class HumanInputBroker:
    def __init__(self) -> None:
        self._active: HumanInputRequest | None = None
        self._listeners: list[Listener] = []

    @property
    def active(self) -> HumanInputRequest | None:
        return self._active

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; it fires immediately with the current request."""
        self._listeners.append(listener)
        listener(self._active)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def request(self, question: str, fields: list[HumanInputField]) -> Answer:
        if self._active is not None:
            self.cancel()
        req = HumanInputRequest(
            question=question, fields=fields,
            future=asyncio.get_running_loop().create_future(),
        )
        self._active = req
        self._notify()
        try:
            return await req.future
        finally:
            if not req.future.done():
                req.future.cancel()
            if self._active is req:
                self._active = None
                self._notify()

    def answer(self, request_id: str, answer: Answer) -> None:
        req = self._active
        if req is None or req.id != request_id:
            raise KeyError(f"No pending human input request '{request_id}'")
        missing = [f.key for f in req.fields if f.required and not answer.get(f.key)]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        req.future.set_result(answer)

    def cancel(self) -> None:
        req = self._active
        if req is None:
            return
        logger.info(f"Cancelling human input request {req.id}")
        if not req.future.done():
            req.future.set_exception(HumanInputCancelled("Human input cancelled"))
        self._active = None
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._active)

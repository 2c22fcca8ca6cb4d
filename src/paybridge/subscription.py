"""
Pull subscriber shared by the responder and the correlator.

Listening means: fetch N, and as soon as a batch has been handled fetch N
again. A separate keep-alive thread re-issues the fetch every
``keepalive_interval`` seconds so the subscription never idles out, even with
no traffic at all.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from paybridge.errors import SubscriptionClosed
from paybridge.transport.bus import ConsumerEvent, EventBus, ReplayPreset, Subscription

logger = logging.getLogger(__name__)

RECEIVE_POLL_S = 0.5


class SubscriberState(str, Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    LISTENING = "listening"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    CLOSED = "closed"


@dataclass
class SubscriptionContext:
    """Everything the listen and keep-alive loops touch, passed in explicitly."""
    subscription: Subscription
    topic: str
    fetch_size: int
    keepalive_interval: float
    stop: threading.Event = field(default_factory=threading.Event)


class PullSubscriber:
    def __init__(
        self,
        bus: EventBus,
        topic: str,
        handler: Callable[[ConsumerEvent], None],
        *,
        name: str = "subscriber",
        fetch_size: int = 10,
        keepalive_interval: float = 5.0,
        replay_preset: ReplayPreset = ReplayPreset.LATEST,
        replay_id: Optional[bytes] = None,
    ):
        self._bus = bus
        self._topic = topic
        self._handler = handler
        self._name = name
        self._fetch_size = fetch_size
        self._keepalive_interval = keepalive_interval
        self._replay_preset = replay_preset
        self._replay_id = replay_id
        self._state = SubscriberState.IDLE
        self._ctx: Optional[SubscriptionContext] = None
        self._threads: list[threading.Thread] = []
        self._closed = threading.Event()
        self._finish_lock = threading.Lock()

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state in (SubscriberState.LISTENING, SubscriberState.DISPATCHING)

    def start(self) -> None:
        """Open the subscription, issue the first fetch and start both loops."""
        if self._state != SubscriberState.IDLE:
            return
        self._state = SubscriberState.SUBSCRIBING
        logger.info(f"[{self._name}] Subscribing to {self._topic} (replay preset {self._replay_preset.value})")
        try:
            subscription = self._bus.subscribe(self._topic, self._replay_preset, self._replay_id)
            subscription.fetch(self._fetch_size)
        except Exception:
            self._state = SubscriberState.CLOSED
            self._closed.set()
            raise
        self._ctx = SubscriptionContext(
            subscription=subscription,
            topic=self._topic,
            fetch_size=self._fetch_size,
            keepalive_interval=self._keepalive_interval,
        )
        self._state = SubscriberState.LISTENING
        self._threads = [
            threading.Thread(target=self._listen, args=(self._ctx,), name=f"{self._name}-listen", daemon=True),
            threading.Thread(target=self._keepalive, args=(self._ctx,), name=f"{self._name}-keepalive", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info(f"[{self._name}] Subscription active, waiting for events...")

    def stop(self, timeout: float = 5.0) -> None:
        ctx = self._ctx
        if ctx is None:
            self._state = SubscriberState.CLOSED
            self._closed.set()
            return
        if self._state != SubscriberState.CLOSED:
            self._state = SubscriberState.DRAINING
        ctx.stop.set()
        for t in self._threads:
            if t is not threading.current_thread():
                t.join(timeout=timeout)
        self._finish(ctx)

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        return self._closed.wait(timeout)

    def _listen(self, ctx: SubscriptionContext) -> None:
        while not ctx.stop.is_set():
            try:
                batch = ctx.subscription.receive(timeout=RECEIVE_POLL_S)
            except SubscriptionClosed as e:
                if not ctx.stop.is_set():
                    logger.error(f"[{self._name}] Subscribe stream closed: {e}")
                break
            except Exception:
                logger.error(f"[{self._name}] Subscribe stream error", exc_info=True)
                break
            if batch is None:
                continue

            logger.debug(f"[{self._name}] Received {len(batch)} events")
            self._state = SubscriberState.DISPATCHING
            for event in batch:
                try:
                    self._handler(event)
                except Exception:
                    logger.error(f"[{self._name}] Error processing event {event.replay_id.hex()}", exc_info=True)
            if self._state == SubscriberState.DISPATCHING:
                self._state = SubscriberState.LISTENING

            if ctx.stop.is_set():
                break
            try:
                ctx.subscription.fetch(ctx.fetch_size)
            except SubscriptionClosed as e:
                logger.error(f"[{self._name}] Cannot re-fetch: {e}")
                break
        ctx.stop.set()
        self._finish(ctx)

    def _keepalive(self, ctx: SubscriptionContext) -> None:
        while not ctx.stop.wait(ctx.keepalive_interval):
            try:
                ctx.subscription.fetch(ctx.fetch_size)
                logger.debug(f"[{self._name}] Sent periodic fetch request")
            except SubscriptionClosed:
                break
            except Exception:
                logger.error(f"[{self._name}] Polling error", exc_info=True)

    def _finish(self, ctx: SubscriptionContext) -> None:
        with self._finish_lock:
            if self._closed.is_set():
                return
            self._state = SubscriberState.DRAINING
            try:
                ctx.subscription.close()
            except Exception:
                logger.debug(f"[{self._name}] Subscription already closed", exc_info=True)
            self._state = SubscriberState.CLOSED
            self._closed.set()
        logger.info(f"[{self._name}] Subscription closed")

"""Notifier — where account notices leave this subsystem.

Learn: Rendering and sending the email is someone else's job. Warden
only announces what should be sent:

- an action token ("user X needs a verify/reset message with token T")
- a welcome, once, after an account is verified

Two implementations:

- LogNotifier   → logs the announcement (development, tests)
- RedisNotifier → publishes JSON on a Redis channel that a mail worker
                  subscribes to. Pub/sub is fire-and-forget; if no worker
                  is listening, the message is lost and the user can ask
                  for a new link.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from warden.stores.base import ActionType

logger = structlog.get_logger()

MAIL_CHANNEL = "warden:mail"


@dataclass(frozen=True)
class ActionTokenNotice:
    email: str
    name: str
    action_type: ActionType
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class WelcomeNotice:
    email: str
    name: str


class Notifier(Protocol):
    async def send(self, notice: ActionTokenNotice) -> None: ...

    async def welcome(self, notice: WelcomeNotice) -> None: ...


@dataclass
class LogNotifier:
    """Logs notices and keeps them in memory (tests read `sent` / `welcomed`)."""

    sent: list[ActionTokenNotice] = field(default_factory=list)
    welcomed: list[WelcomeNotice] = field(default_factory=list)

    async def send(self, notice: ActionTokenNotice) -> None:
        self.sent.append(notice)
        logger.info(
            "notifier.action_token",
            email=notice.email,
            action_type=notice.action_type.value,
            expires_at=notice.expires_at.isoformat(),
        )

    async def welcome(self, notice: WelcomeNotice) -> None:
        self.welcomed.append(notice)
        logger.info("notifier.welcome", email=notice.email)

    def last_token(self, action_type: ActionType) -> str:
        return next(
            n.token for n in reversed(self.sent) if n.action_type == action_type
        )


class RedisNotifier:
    """Publishes notices for an external mail worker."""

    def __init__(self, client: aioredis.Redis, channel: str = MAIL_CHANNEL):
        self._redis = client
        self.channel = channel

    async def send(self, notice: ActionTokenNotice) -> None:
        await self._publish(notice.action_type.value, {
            "type": notice.action_type.value,
            "email": notice.email,
            "name": notice.name,
            "token": notice.token,
            "expires_at": notice.expires_at.isoformat(),
        })

    async def welcome(self, notice: WelcomeNotice) -> None:
        await self._publish("welcome", {
            "type": "welcome",
            "email": notice.email,
            "name": notice.name,
        })

    async def _publish(self, kind: str, body: dict) -> None:
        try:
            await self._redis.publish(self.channel, json.dumps(body))
        except RedisError as e:
            # The state change already committed; a lost notice is not retried
            logger.warning("notifier.publish_failed", kind=kind, error=str(e))

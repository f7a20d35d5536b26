"""Gateway intent flags."""

from __future__ import annotations

import enum
from typing import Any, Iterable


class Intents(enum.IntFlag):
    """Event categories a session subscribes to at identify time."""

    GUILDS = 1 << 0
    GUILD_MEMBERS = 1 << 1
    GUILD_MESSAGES = 1 << 9
    GUILD_MESSAGE_REACTIONS = 1 << 10
    DIRECT_MESSAGE = 1 << 12
    OPEN_FORUM_EVENT = 1 << 18
    AUDIO_OR_LIVE_CHANNEL_MEMBER = 1 << 19
    PUBLIC_MESSAGES = 1 << 25
    INTERACTION = 1 << 26
    MESSAGE_AUDIT = 1 << 27
    FORUMS = 1 << 28
    AUDIO_ACTION = 1 << 29
    PUBLIC_GUILD_MESSAGES = 1 << 30

    @classmethod
    def none(cls) -> Intents:
        return cls(0)

    @classmethod
    def all(cls) -> Intents:
        value = cls(0)
        for member in cls:
            value |= member
        return value

    @classmethod
    def privileged(cls) -> Intents:
        return cls.GUILD_MESSAGES | cls.FORUMS

    @classmethod
    def default(cls) -> Intents:
        return cls.all() ^ cls.privileged()

    def has_privileged(self) -> bool:
        return bool(self & self.privileged())

    def names(self) -> list[str]:
        return [member.name for member in type(self) if member.name and member in self]

    def describe(self) -> str:
        names = self.names()
        if not names:
            return "Intents(NONE)"
        return f"Intents({' | '.join(names)})"

    @classmethod
    def parse(cls, value: Any) -> Intents:
        """Build intents from an int, a name, or an iterable of names/ints."""

        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError("Intents must be an integer or a list of intent names")
        if isinstance(value, int):
            if value < 0 or value >= 1 << 32:
                raise ValueError(f"Intents value out of range: {value}")
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls.parse(int(text))
            return cls._from_names(part for part in text.replace("|", ",").split(","))
        if isinstance(value, Iterable):
            result = cls(0)
            for item in value:
                result |= cls.parse(item)
            return result
        raise ValueError(f"Unsupported intents value: {value!r}")

    @classmethod
    def _from_names(cls, names: Iterable[str]) -> Intents:
        result = cls(0)
        for raw in names:
            name = raw.strip().upper()
            if not name:
                continue
            try:
                result |= cls[name]
            except KeyError as exc:
                raise ValueError(f"Unknown intent: {raw.strip()}") from exc
        return result


__all__ = ["Intents"]

"""Login platforms and platform-scoped user id helpers."""

from __future__ import annotations

from enum import StrEnum

from gather.errors import ValidationFailure


class Platform(StrEnum):
    TELEGRAM = "telegram"
    FARCASTER = "farcaster"
    WEB = "web"
    DISCORD = "discord"
    TWITTER = "twitter"
    GITHUB = "github"
    APPLE = "apple"
    EMAIL = "email"
    PHONE = "phone"


def make_platform_user_id(platform: Platform | str, native_id: str | int) -> str:
    """Build the ``<platform>_<native-id>`` form."""
    platform = parse_platform(platform)
    native = str(native_id).strip()
    if not native:
        msg = "native id must not be empty"
        raise ValidationFailure(msg)
    return f"{platform.value}_{native}"


def parse_platform(value: Platform | str) -> Platform:
    try:
        return Platform(value)
    except ValueError:
        msg = f"Unknown platform: {value}"
        raise ValidationFailure(msg) from None


def detect_platform(platform_user_id: str) -> Platform:
    """Platform from the id prefix. Ids without a known prefix are treated as web accounts."""
    prefix, sep, _ = platform_user_id.partition("_")
    if sep:
        try:
            return Platform(prefix)
        except ValueError:
            pass
    return Platform.WEB

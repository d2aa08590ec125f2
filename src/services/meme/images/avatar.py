from typing import Optional, Protocol


class AvatarLookup(Protocol):
    async def avatar_url(self, user_id: str) -> str: ...


class AvatarProvider:
    """Maps a user id to an avatar URL.

    The invoker's own avatar comes from the chat platform when it was supplied
    with the request; every other id uses the configured URL template.
    """

    def __init__(
        self,
        url_template: str,
        known_avatars: Optional[dict[str, str]] = None,
    ):
        self.url_template = url_template
        self.known_avatars = dict(known_avatars or {})

    def with_known(self, user_id: str, avatar_url: Optional[str]) -> "AvatarProvider":
        if not avatar_url:
            return self
        return AvatarProvider(self.url_template, {**self.known_avatars, user_id: avatar_url})

    async def avatar_url(self, user_id: str) -> str:
        known = self.known_avatars.get(user_id)
        if known:
            return known
        return self.url_template.format(user_id=user_id)

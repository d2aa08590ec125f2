from .avatar import AvatarLookup, AvatarProvider
from .resolver import ImageResolver

__all__ = ["AvatarLookup", "AvatarProvider", "ImageResolver"]

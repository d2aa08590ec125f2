from .models import (
    GroupNode,
    ImageNode,
    ImageReference,
    MentionNode,
    MessageNode,
    ParsedArguments,
    TextNode,
    UrlImage,
    UserAvatar,
)
from .parser import ArgumentParser, to_command_line
from .validator import ConstraintValidator

__all__ = [
    "ArgumentParser",
    "ConstraintValidator",
    "GroupNode",
    "ImageNode",
    "ImageReference",
    "MentionNode",
    "MessageNode",
    "ParsedArguments",
    "TextNode",
    "UrlImage",
    "UserAvatar",
    "to_command_line",
]

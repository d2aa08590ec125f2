from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# Message nodes, as delivered by the chat layer


class TextNode(BaseModel):
    type: Literal["text"] = "text"
    content: str


class MentionNode(BaseModel):
    type: Literal["mention"] = "mention"
    user_id: str


class ImageNode(BaseModel):
    type: Literal["image"] = "image"
    src: str


class GroupNode(BaseModel):
    type: Literal["group"] = "group"
    children: List["MessageNode"] = Field(default_factory=list)


MessageNode = Annotated[
    Union[TextNode, MentionNode, ImageNode, GroupNode],
    Field(discriminator="type"),
]
GroupNode.model_rebuild()


# Image references: unresolved pointers to image bytes


class UrlImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["url"] = "url"
    url: str

    def __str__(self) -> str:
        return self.url if len(self.url) <= 80 else self.url[:77] + "..."


class UserAvatar(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["user"] = "user"
    user_id: str

    def __str__(self) -> str:
        return f"avatar of {self.user_id}"


ImageReference = Annotated[Union[UrlImage, UserAvatar], Field(discriminator="kind")]


class ParsedArguments(BaseModel):
    image_refs: List[ImageReference] = Field(default_factory=list)
    texts: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)

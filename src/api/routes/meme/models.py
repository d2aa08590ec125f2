from typing import List, Optional

from pydantic import BaseModel, Field

from src.services.meme.arguments import MessageNode
from src.services.meme.generator import Invoker


class MemeGenerateRequest(BaseModel):
    key: str
    nodes: List[MessageNode] = Field(default_factory=list)
    # elements of the message being replied to, if any
    quoted: Optional[List[MessageNode]] = None
    invoker: Invoker


class ImageToolRequest(BaseModel):
    # the image (or a mention) and any tool parameters, e.g. "90" for rotate
    nodes: List[MessageNode] = Field(default_factory=list)
    quoted: Optional[List[MessageNode]] = None
    invoker: Invoker


class TemplateSummary(BaseModel):
    key: str
    keywords: List[str]
    tags: List[str]
    min_images: int
    max_images: Optional[int]
    min_texts: int
    max_texts: Optional[int]


class TemplateSearchResponse(BaseModel):
    query: str
    templates: List[TemplateSummary]


class RefreshResponse(BaseModel):
    count: int
    fetched_at: Optional[int] = None

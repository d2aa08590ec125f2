from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MemeOption(BaseModel):
    """A template-declared extra parameter (`-name=value` on the command line)."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    default: Optional[Any] = None
    choices: Optional[List[Any]] = None
    description: Optional[str] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    # alternative spellings accepted on the command line, without dashes
    aliases: List[str] = Field(default_factory=list)
    # aliases that set a fixed value when given bare, e.g. --male -> gender=male
    flag_values: Dict[str, Any] = Field(default_factory=dict)


class MemeShortcut(BaseModel):
    """A phrase that selects a template with preset arguments."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    humanized: Optional[str] = None
    args: List[str] = Field(default_factory=list)


class TemplateInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    keywords: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    min_images: int = 0
    max_images: Optional[int] = None
    min_texts: int = 0
    max_texts: Optional[int] = None
    default_texts: List[str] = Field(default_factory=list)
    options: List[MemeOption] = Field(default_factory=list)
    shortcuts: List[MemeShortcut] = Field(default_factory=list)
    date_created: Optional[str] = None
    date_modified: Optional[str] = None
    # False for key-only entries (lazy refresh, or a failed info fetch)
    complete: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "TemplateInfo":
        if self.max_images is not None and self.min_images > self.max_images:
            raise ValueError(
                f"{self.key}: min_images {self.min_images} > max_images {self.max_images}"
            )
        if self.max_texts is not None and self.min_texts > self.max_texts:
            raise ValueError(
                f"{self.key}: min_texts {self.min_texts} > max_texts {self.max_texts}"
            )
        return self

    @classmethod
    def placeholder(cls, key: str) -> "TemplateInfo":
        return cls(key=key, complete=False)

    def option(self, name: str) -> Optional[MemeOption]:
        """Look up a declared option by name or alias (`-` and `_` are interchangeable)."""
        candidates = {name, name.replace("-", "_")}
        for option in self.options:
            if option.name in candidates or candidates.intersection(option.aliases):
                return option
        return None

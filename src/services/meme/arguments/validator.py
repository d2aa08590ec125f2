from typing import List, Optional, TypeVar

from loguru import logger as log

from src.services.meme.arguments.models import ParsedArguments, UserAvatar
from src.services.meme.errors import CountKind, CountMismatch
from src.services.meme.templates.models import TemplateInfo

T = TypeVar("T")


class ConstraintValidator:
    """Fits parsed arguments to a template's image/text count contract.

    In order: inject the invoker's avatar when exactly one image short,
    substitute default texts when none were given, trim or reject excess,
    reject shortfall.
    """

    def __init__(self, tolerate_excess: bool = False):
        self.tolerate_excess = tolerate_excess

    def apply(
        self,
        parsed: ParsedArguments,
        template: TemplateInfo,
        invoker_id: str,
    ) -> ParsedArguments:
        image_refs = list(parsed.image_refs)
        texts = list(parsed.texts)

        supplied = len(image_refs)
        if (supplied == 0 and template.min_images == 1) or (
            supplied > 0 and supplied + 1 == template.min_images
        ):
            image_refs.insert(0, UserAvatar(user_id=invoker_id))
            log.debug(f"Added avatar of {invoker_id} for {template.key}")

        if not texts and template.default_texts:
            texts = list(template.default_texts)

        image_refs = self._fit("image", image_refs, template.min_images, template.max_images)
        texts = self._fit("text", texts, template.min_texts, template.max_texts)

        return ParsedArguments(image_refs=image_refs, texts=texts, options=dict(parsed.options))

    def _fit(
        self,
        kind: CountKind,
        items: List[T],
        minimum: int,
        maximum: Optional[int],
    ) -> List[T]:
        if maximum is not None and len(items) > maximum:
            if not self.tolerate_excess:
                raise CountMismatch(kind, minimum, maximum, len(items))
            log.debug(f"Dropping {len(items) - maximum} excess {kind} arguments")
            items = items[:maximum]
        if len(items) < minimum:
            raise CountMismatch(kind, minimum, maximum, len(items))
        return items

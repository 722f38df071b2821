"""
Image selection for new sandboxes.

Priority (first match wins):
1. Explicit recovery image id - used verbatim
2. The fragment's own filesystem snapshot
3. The template's pre-built snapshot for the current environment
4. The generic base image - needs a template name and a file restore
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from config import settings
from .database import ProjectStore
from .errors import ConfigurationError
from .provider import BASE_IMAGE
from .templates import Environment, TemplateSnapshot, get_snapshot_image_id

logger = logging.getLogger(__name__)

ImageSource = Literal["recovery", "fragment", "template", "base"]


@dataclass(frozen=True)
class ImageSelection:
    """Which image to boot from and whether files must be restored afterwards."""
    image_ref: str
    restoration_needed: bool
    source: ImageSource
    template_name: Optional[str] = None


def choose_image(
    recovery_image_id: Optional[str] = None,
    fragment_snapshot_id: Optional[str] = None,
    template_name: Optional[str] = None,
    template_snapshot_id: Optional[str] = None,
) -> ImageSelection:
    """Pure priority decision over already-resolved candidates."""
    if recovery_image_id:
        return ImageSelection(recovery_image_id, False, "recovery", template_name)

    if fragment_snapshot_id:
        return ImageSelection(fragment_snapshot_id, False, "fragment", template_name)

    if template_snapshot_id:
        return ImageSelection(template_snapshot_id, False, "template", template_name)

    if not template_name:
        raise ConfigurationError(
            "Sandbox recovery requires a template but none was provided. "
            "Cannot proceed with bare base image."
        )

    return ImageSelection(BASE_IMAGE, True, "base", template_name)


class ImageSelector:
    """Resolves fragment and template snapshots, then applies choose_image()."""

    def __init__(
        self,
        store: ProjectStore,
        environment: Environment | None = None,
        registry: dict[str, TemplateSnapshot] | None = None,
    ):
        self.store = store
        self.environment = environment or settings.snapshot_environment
        self.registry = registry

    async def select(
        self,
        recovery_image_id: Optional[str] = None,
        fragment_id: Optional[str] = None,
        template_name: Optional[str] = None,
        environment: Environment | None = None,
    ) -> ImageSelection:
        env = environment or self.environment

        fragment_snapshot_id = None
        if not recovery_image_id and fragment_id:
            fragment = await self.store.get_fragment(fragment_id)
            if fragment is None:
                logger.warning(f"[ImageSelector] Fragment {fragment_id} not found, ignoring its snapshot")
            else:
                fragment_snapshot_id = fragment.snapshot_image_id

        template_snapshot_id = None
        if template_name:
            template_snapshot_id = get_snapshot_image_id(template_name, env, self.registry)

        selection = choose_image(
            recovery_image_id=recovery_image_id,
            fragment_snapshot_id=fragment_snapshot_id,
            template_name=template_name,
            template_snapshot_id=template_snapshot_id,
        )
        logger.info(
            f"[ImageSelector] Selected {selection.source} image {selection.image_ref} "
            f"(env={env}, restore={selection.restoration_needed})"
        )
        return selection

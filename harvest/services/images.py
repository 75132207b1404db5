import logging
from collections.abc import Sequence


logger = logging.getLogger(__name__)


class NoImageFound(LookupError):
    def __init__(self, labels: Sequence[str]):
        self.labels = list(labels)
        super().__init__(f"No image found for labels: {', '.join(self.labels)}")


def matching_images(labels: Sequence[str], supported_images: Sequence[str]) -> list[str]:
    # Supported images are compared as literal label strings, in configured order.
    label_set = set(labels)
    return [image for image in supported_images if image in label_set]


def should_handle(labels: Sequence[str], supported_images: Sequence[str]) -> bool:
    return bool(matching_images(labels, supported_images))


def resolve_image(labels: Sequence[str], supported_images: Sequence[str]) -> str:
    matches = matching_images(labels, supported_images)
    if not matches:
        raise NoImageFound(labels)
    if len(matches) > 1:
        logger.warning(
            "Multiple images found: %s. Using first one: %s",
            ", ".join(matches),
            matches[0],
        )
    return matches[0]

import json
import logging
from functools import lru_cache
from pathlib import Path

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .exceptions import UnknownCourse

logger = logging.getLogger(__name__)


def load_courses(path) -> dict[str, int]:
    """Read a JSON list of ``{"name", "price"}`` objects into a name -> price map."""
    try:
        courses = json.loads(Path(path).read_text(encoding="utf-8"))
        catalog = {course["name"]: int(course["price"]) for course in courses}
    except (OSError, ValueError, TypeError, KeyError) as e:
        raise ImproperlyConfigured(f"Failed to load course catalog from {path}: {e}") from e

    logger.info("Courses loaded: %s", ", ".join(catalog))
    return catalog


@lru_cache(maxsize=1)
def get_catalog() -> dict[str, int]:
    return load_courses(settings.COURSES_FILE)


def get_course_price(name: str) -> int:
    """Price in rupees."""
    catalog = get_catalog()
    if not name or name not in catalog:
        raise UnknownCourse(name)
    return catalog[name]

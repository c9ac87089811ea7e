"""Deterministic fixture content written into test storage images."""
from typing import Dict

LOREM_IPSUM = (
    "Lorem ipsum dolor sit amet, consectetur adipiscing elit. In ut magna "
    "consequat, cursus velit aliquam, scelerisque odio. Ut lorem eros, "
    "feugiat quis bibendum vitae, malesuada ac orci. Praesent eget quam non "
    "nunc fringilla cursus imperdiet non tellus. Aenean dictum lobortis "
    "turpis, non interdum leo rhoncus sed. Cras in tellus auctor, faucibus "
    "tortor ut, maximus metus. Praesent placerat ut magna non tristique. "
    "Pellentesque at nunc quis dui tempor vulputate. Vestibulum vitae massa "
    "orci. Mauris et tellus quis risus sagittis placerat. Integer lorem leo, "
    "feugiat sed molestie non, viverra a tellus."
)


def default_fixtures(path: str = "lorem.txt") -> Dict[str, bytes]:
    """The single-file fixture set booted by the image variants."""
    return {path: LOREM_IPSUM.encode("ascii")}

"""Media query generation for viewport group ranges."""

from __future__ import annotations

from typing import Optional


def generate_media_query(
    minimum_viewport_width: Optional[int],
    maximum_viewport_width: Optional[int],
) -> Optional[str]:
    """Generate a range media query for an (exclusive min, inclusive max] width range.

    Returns None when neither bound applies. A minimum of 0 is the same as no
    minimum since every viewport is wider than zero.
    """
    if (
        minimum_viewport_width is not None
        and maximum_viewport_width is not None
        and minimum_viewport_width >= maximum_viewport_width
    ):
        raise ValueError(
            "The minimum width cannot be greater than or equal to the maximum width "
            f"({minimum_viewport_width} >= {maximum_viewport_width})."
        )

    has_min = minimum_viewport_width is not None and minimum_viewport_width > 0
    has_max = maximum_viewport_width is not None
    if has_min and has_max:
        return f"({minimum_viewport_width}px < width <= {maximum_viewport_width}px)"
    if has_min:
        return f"({minimum_viewport_width}px < width)"
    if has_max:
        return f"(width <= {maximum_viewport_width}px)"
    return None

"""
Display options for text summaries of fitted results.
"""

from dataclasses import dataclass


@dataclass
class DisplayOptions:
    """
    Options for displaying results as text.

    Attributes
    ----------
    dp : int
        Decimal places for numeric output
    text_width : int
        Width of headers and separators
    """
    dp: int = 3
    text_width: int = 70

    def __post_init__(self):
        if not isinstance(self.dp, int) or self.dp < 1:
            raise ValueError("Invalid dp")
        if not isinstance(self.text_width, int) or self.text_width < 20:
            raise ValueError("Invalid text_width")

    def header(self, text: str) -> str:
        """Return a boxed header line."""
        rule = "=" * self.text_width
        return f"{rule}\n{text}\n{rule}"

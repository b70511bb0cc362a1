"""
Receipt templates for the 58mm printer.
Each template renders text into an ESC/POS byte string using python-escpos'
Dummy printer, which buffers commands instead of sending them anywhere.
"""

import logging
import textwrap
from typing import Callable, Dict, Sequence

from escpos.printer import Dummy  # type: ignore

from .exceptions import UnknownTemplateError

logger = logging.getLogger(__name__)

LINE_WIDTH = 32
FEED_LINES = 4
FOOTER = ('Powered by Claude', '58mm of pure joy')


def _new_receipt() -> Dummy:
    receipt = Dummy()
    receipt.hw('INIT')
    return receipt


def _feed(receipt: Dummy, lines: int = FEED_LINES):
    receipt.text('\n' * lines)


def build_certificate(text: str, event_name: str = 'ClawCon 2026', width: int = LINE_WIDTH,
                      footer: Sequence[str] = FOOTER) -> bytes:
    """Certificate of attendance with the text as the dedication line."""
    rule = '=' * width
    receipt = _new_receipt()

    receipt.set(align='center', bold=True, double_width=True, double_height=True)
    receipt.text(f"{event_name}\n")
    receipt.set(normal_textsize=True, bold=False)
    receipt.text(f"{rule}\n\n")

    receipt.set(bold=True)
    receipt.text("OFFICIAL CERTIFICATE\n")
    receipt.text("OF ATTENDANCE\n")
    receipt.set(bold=False)
    receipt.text("\n")

    receipt.set(align='left')
    receipt.text("This certifies that the\n")
    receipt.text("bearer of this receipt\n")
    receipt.text("has survived a live demo\n")
    receipt.text("where an AI controlled\n")
    receipt.text("a thermal printer.\n\n")

    receipt.set(align='center', bold=True)
    receipt.text(f"{text}\n")
    receipt.set(bold=False)
    receipt.text("\n")
    receipt.text(f"{rule}\n")
    for line in footer:
        receipt.text(f"{line}\n")
    _feed(receipt)
    return receipt.output


def build_plain(text: str, width: int = LINE_WIDTH, **_) -> bytes:
    """Left aligned text wrapped to the paper width."""
    receipt = _new_receipt()
    receipt.set(align='left')
    for line in textwrap.wrap(text, width=width) or [text]:
        receipt.text(f"{line}\n")
    _feed(receipt)
    return receipt.output


TEMPLATES: Dict[str, Callable[..., bytes]] = {
    'certificate': build_certificate,
    'clawcon-certificate': build_certificate,
    'plain': build_plain,
}


def render(template: str, text: str, options: dict = None) -> bytes:
    """
    Render a receipt.

    Args:
        template: Template name (see TEMPLATES)
        text: Text to print
        options: The 'templates' configuration section

    Returns:
        ESC/POS bytes ready for the printer

    Raises:
        UnknownTemplateError: If the template does not exist
    """
    builder = TEMPLATES.get(template)
    if builder is None:
        raise UnknownTemplateError(
            f"Unknown template: {template}",
            context={'available': ', '.join(sorted(TEMPLATES))}
        )

    options = options or {}
    kwargs = {'width': options.get('width', LINE_WIDTH)}
    if builder is build_certificate:
        for key in ('event_name', 'footer'):
            if key in options:
                kwargs[key] = options[key]

    data = builder(text, **kwargs)
    logger.debug(f"[Templates] Rendered {template}: {len(data)} bytes")
    return data

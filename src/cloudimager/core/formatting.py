"""
File name templating for cloudimager outlets.

Templates contain ``{{field}}`` placeholders which are resolved against the
image descriptor and the outlet context.
"""

import re
from typing import Any, Callable, Dict, Optional, Union

from ..models import ORIGINAL_VARIANT, OutletContext

DEFAULT_FILE_NAME_FORMAT = "{{uid}}{{prefixedVariant}}{{mimeExtension}}"

FileNameTemplate = Union[str, Callable[[OutletContext], str]]
FileNameFormatter = Callable[[FileNameTemplate, OutletContext], str]

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def prefixed_variant(variant: Optional[str]) -> str:
    """Return ``_<variant>``, or an empty string for the original image."""
    if not variant or variant == ORIGINAL_VARIANT:
        return ""
    return "_" + variant


def template_variables(context: OutletContext) -> Dict[str, Any]:
    """
    Collect the placeholder values available for a context.

    Context fields (including caller-supplied extras) take precedence over
    descriptor fields of the same name.
    """
    image = context.image
    variables: Dict[str, Any] = {
        "prefixedVariant": prefixed_variant(context.variant),
        "name": image.name,
        "extension": image.extension,
        "basename": image.basename,
        "mimeExtension": image.mime_extension,
        "uid": image.uid,
    }
    variables.update(context.template_fields())
    return variables


def format_file_name(template: FileNameTemplate, context: OutletContext) -> str:
    """
    Resolve a file name template for one image variant.

    Args:
        template: Template string, or a callable returning one for the context
        context: The outlet context of the variant being stored

    Returns:
        str: The template with every known placeholder substituted; unknown
        placeholders are kept verbatim
    """
    if callable(template):
        template = template(context)

    variables = template_variables(context)

    def _substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables or variables[key] is None:
            return match.group(0)
        return str(variables[key])

    return _PLACEHOLDER.sub(_substitute, template)

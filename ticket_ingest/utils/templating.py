"""
Acknowledgment Templating
Closed-set {{placeholder}} substitution for tenant email templates
"""
import re
from typing import Dict

TEMPLATE_VARIABLES = frozenset({
    'customerName',
    'companyName',
    'subject',
    'ticketNumber',
    'portalUrl',
})

PLACEHOLDER_PATTERN = re.compile(r'\{\{\s*([A-Za-z]+)\s*\}\}')

DEFAULT_SUBJECT = "[{{ticketNumber}}] We have received your support request"
DEFAULT_BODY = (
    "Hello {{customerName}},\n\n"
    "Thank you for contacting {{companyName}}. We have received your request "
    "\"{{subject}}\" and opened ticket {{ticketNumber}}.\n\n"
    "Our team will get back to you as soon as possible.\n"
    "{{portalUrl}}\n\n"
    "Best regards,\n"
    "{{companyName}} Support"
)

ESCALATION_SUBJECT = "[{{ticketNumber}}] Your support request has been escalated"
ESCALATION_BODY = (
    "Hello {{customerName}},\n\n"
    "We have received your follow-up on ticket {{ticketNumber}} "
    "(\"{{subject}}\") and raised its priority.\n\n"
    "{{portalUrl}}\n\n"
    "Best regards,\n"
    "{{companyName}} Support"
)


def render_template(template: str, variables: Dict[str, str]) -> str:
    """
    Substitute known placeholders in a template

    Every occurrence of a known placeholder is replaced. Placeholders outside
    the known set, or known ones without a value, are left verbatim. Values
    are inserted as-is and never re-scanned for placeholders.

    Args:
        template: Template text
        variables: Placeholder name to value

    Returns:
        Rendered text
    """
    if not template:
        return ''

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if name in TEMPLATE_VARIABLES and name in variables:
            value = variables[name]
            return '' if value is None else str(value)
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(substitute, template)

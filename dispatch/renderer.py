"""
Default template renderer.

Templates live in the `templates` collection as
{"_id": "<template id>", "subject": "...", "body": "..."} with `{{variable}}`
placeholders. Content generation proper is an external concern; anything
with a `render(recipient, template_id) -> {"subject", "body"}` method can be
passed to the orchestrator instead.
"""

import logging
import re
from typing import Dict

from database import SITES, TEMPLATES, get_db

logger = logging.getLogger("outreach.renderer")

PLACEHOLDER_RE = re.compile(r"\{\{\s*([a-z_][a-z0-9_]*)\s*\}\}", re.I)


class RenderError(Exception):
    """The message for a recipient could not be produced."""


class TemplateRenderer:

    def __init__(self, db=None):
        db = db if db is not None else get_db()
        self._templates = db[TEMPLATES]
        self._sites = db[SITES]

    def variables_for(self, recipient: Dict) -> Dict[str, str]:
        email = recipient.get("email") or ""
        name = (recipient.get("name") or "").strip()
        site = self._sites.find_one({"_id": recipient.get("site_id")}) if recipient.get("site_id") else None
        return {
            "name": name or "there",
            "first_name": name.split()[0] if name else "there",
            "email": email,
            "email_domain": email.rsplit("@", 1)[-1] if "@" in email else "",
            "site_domain": (site or {}).get("domain", ""),
        }

    def render(self, recipient: Dict, template_id: str) -> Dict[str, str]:
        template = self._templates.find_one({"_id": template_id})
        if not template:
            raise RenderError(f"template {template_id!r} not found")

        variables = self.variables_for(recipient)
        subject = self._fill(template.get("subject", ""), variables, template_id)
        body = self._fill(template.get("body", ""), variables, template_id)
        if not subject.strip() or not body.strip():
            raise RenderError(f"template {template_id!r} rendered an empty subject or body")
        return {"subject": subject, "body": body}

    @staticmethod
    def _fill(text: str, variables: Dict[str, str], template_id: str) -> str:
        missing = set()

        def replace(match):
            key = match.group(1).lower()
            if key not in variables:
                missing.add(key)
                return match.group(0)
            return variables[key]

        rendered = PLACEHOLDER_RE.sub(replace, text)
        if missing:
            raise RenderError(f"template {template_id!r} uses unknown variables: {', '.join(sorted(missing))}")
        return rendered

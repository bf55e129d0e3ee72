"""Plain-text summary of a scan."""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from jinja2 import Environment, FileSystemLoader, TemplateError

logger = logging.getLogger(__name__)

TEMPLATE_NAME = "scan_summary.txt"


class DigestService:
    """Render the scan summary printed at the end of a scan."""

    def __init__(self, template_dir: Optional[str] = None, top_n: int = 5):
        if template_dir is None:
            template_dir = Path(__file__).parent.parent / "templates"
        self.template_dir = Path(template_dir)
        self.top_n = top_n

        if self.template_dir.exists():
            self.jinja_env = Environment(
                loader=FileSystemLoader(str(self.template_dir)),
                trim_blocks=True,
                autoescape=False,
            )
        else:
            self.jinja_env = None
            logger.warning(f"Template directory not found: {self.template_dir}")

    def build_context(self, latest: Dict[str, Any], warnings: Optional[List[str]] = None) -> Dict[str, Any]:
        top = []
        for item in (latest.get("matching") or [])[: self.top_n]:
            total = item.get("totalChf")
            top.append(
                {
                    "priority": item.get("priority") or "",
                    "object_type": item.get("objectType") or "",
                    "area": item.get("area") or "",
                    "price": f"CHF {total}" if total is not None else item.get("priceRaw") or "",
                    "url": item.get("url") or "",
                }
            )

        return {
            "total_count": latest.get("totalCount", 0),
            "new_count": latest.get("newCount", 0),
            "removed_count": latest.get("removedCount") or 0,
            "matching_count": latest.get("matchingCount", 0),
            "top": top,
            "warnings": list(warnings or []),
        }

    def render(self, latest: Dict[str, Any], warnings: Optional[List[str]] = None) -> str:
        """
        Render the summary for a ``latest-listings`` snapshot.

        Args:
            latest: Snapshot as built by the reconciler
            warnings: ``WARN <source>: <error>`` lines of failed fetches

        Returns:
            Summary text, one fact per line
        """
        context = self.build_context(latest, warnings)

        if self.jinja_env is not None:
            try:
                template = self.jinja_env.get_template(TEMPLATE_NAME)
                return template.render(**context).rstrip("\n")
            except TemplateError as e:
                logger.warning(f"Failed to render template: {e}")

        return self._generate_fallback_text(context)

    def _generate_fallback_text(self, context: Dict[str, Any]) -> str:
        """Same lines as the template, for when it is unavailable."""
        lines = [
            f"Scan terminé: {context['total_count']} annonces actives analysées",
            f"Nouvelles annonces: {context['new_count']}",
            f"Annonces retirées (conservées en grisé): {context['removed_count']}",
            f"Annonces pertinentes (budget/critères): {context['matching_count']}",
        ]
        if context["top"]:
            lines.append("Top annonces:")
            for x in context["top"]:
                lines.append(f"- [{x['priority']}] {x['object_type']} · {x['area']} · {x['price']} · {x['url']}")
        else:
            lines.append("Aucune nouvelle annonce pertinente au dernier scan.")
        lines.extend(context["warnings"])
        return "\n".join(lines)

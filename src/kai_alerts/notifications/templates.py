"""
Localized message templates for KAI Alerts.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.config import SMSConfig
from ..core.models import Alert, utc_now
from ..processing.rules import round_half_up

logger = logging.getLogger(__name__)

SUPPORTED_LANGUAGES = ("sw", "en")
ELLIPSIS = "…"


@dataclass
class NotificationTemplate:
    """Message template with {{variable}} placeholders."""

    template_id: str
    language: str
    body_template: str
    variables: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.variables:
            self.variables = re.findall(r'\{\{(\w+)\}\}', self.body_template)

    def render(self, context: Dict[str, Any]) -> str:
        result = self.body_template
        for key in self.variables:
            value = context.get(key)
            result = result.replace(f"{{{{{key}}}}}", "N/A" if value is None else str(value))
        return result


_ALERT_TEMPLATES = {
    "sw": {
        "flood": "⚠️ TAHADHARI YA MAFURIKO!\n{{title}}\nMkoa: {{region}}\nTarehe: {{when}}\n\nOKOA MAZAO YAKO! Hamisha kwa mahali salama.",
        "drought": "☀️ TAHADHARI YA UKAME!\n{{title}}\nMkoa: {{region}}\nMvua: Hazijakuja kwa siku {{days_without_rain}}\n\nPANDA MAZAO YA UKAME.",
        "cyclone": "🌀 TAHADHARI YA KIMBUNGA!\n{{title}}\nMkoa: {{region}}\nKasi: {{wind_speed}} km/h\n\nKIMBIA HARAKA! Nenda mahali salama.",
        "heatwave": "🔥 TAHADHARI YA JOTO KALI!\n{{title}}\nMkoa: {{region}}\nJoto: {{max_temp}}°C kwa siku {{consecutive_days}}\n\nWAPE MIFUGO KIVULI NA MAJI.",
        "locust": "🦗 TAHADHARI YA NZIGE!\n{{title}}\nEneo: {{region}}\nWingi: {{swarm_size}}\n\nLINDA SHAMBA LAKO!",
        "disease": "🦠 TAHADHARI YA UGONJWA!\n{{title}}\nMazao: {{affected_crops}}\n\nFANYA DAWA HARAKA!",
        "default": "⚠️ {{title}}\n{{description}}",
    },
    "en": {
        "flood": "⚠️ FLOOD ALERT!\n{{title}}\nArea: {{region}}\nExpected: {{when}}\n\nMove harvest to high ground NOW!",
        "drought": "☀️ DROUGHT ALERT!\n{{title}}\nArea: {{region}}\n{{days_without_rain}} days without rain\n\nPlant drought-resistant crops.",
        "cyclone": "🌀 CYCLONE ALERT!\n{{title}}\nArea: {{region}}\nSpeed: {{wind_speed}} km/h\n\nEVACUATE NOW! Seek shelter.",
        "heatwave": "🔥 HEATWAVE ALERT!\n{{title}}\nArea: {{region}}\n{{max_temp}}°C for {{consecutive_days}} days\n\nGive livestock shade and water.",
        "locust": "🦗 LOCUST SWARM ALERT!\n{{title}}\nArea: {{region}}\n\nProtect your crops immediately!",
        "disease": "🦠 CROP DISEASE ALERT!\n{{title}}\nCrops: {{affected_crops}}\n\nApply treatment now!",
        "default": "⚠️ {{title}}\n{{description}}",
    },
}

_DIGEST_TEXT = {
    "sw": {
        "header": "🌤️ HALI YA HEWA LEO",
        "none": "✅ Hakuna tahadhari za hali ya hewa leo.\nSiku njema ya kilimo!",
        "count": "⚠️ Tahadhari {count}:",
    },
    "en": {
        "header": "🌤️ TODAY'S WEATHER SUMMARY",
        "none": "✅ No weather alerts today.\nHave a great farming day!",
        "count": "⚠️ {count} Active Alerts:",
    },
}

_REMINDER_TEMPLATES = {
    "sw": "⚠️ KUMBUSHO LA KAI\n\nUsajili wako wa {{plan}} unaisha baada ya siku {{days_left}}.\n\nLipia sasa uendelee kupata tahadhari!\nJibu RENEW",
    "en": "⚠️ KAI REMINDER\n\nYour {{plan}} subscription expires in {{days_left}} days.\n\nRenew now to keep getting alerts!\nReply RENEW",
}

_WHEN_TEXT = {
    "sw": {"soon": "Hivi karibuni", "hours": "saa {n}", "tomorrow": "Kesho", "days": "siku {n}"},
    "en": {"soon": "Soon", "hours": "{n}hrs", "tomorrow": "Tomorrow", "days": "{n} days"},
}


def truncate_message(body: str, signature: str, max_length: int) -> str:
    """Append the signature, shortening the body so the result fits max_length."""
    suffix = f"\n{signature}" if signature else ""
    if len(body) + len(suffix) <= max_length:
        return body + suffix
    room = max(0, max_length - len(suffix) - len(ELLIPSIS))
    return body[:room].rstrip() + ELLIPSIS + suffix


class TemplateEngine:
    """Renders localized SMS bodies for alerts, digests and reminders."""

    def __init__(self, config: Optional[SMSConfig] = None):
        self.config = config or SMSConfig()
        self.templates: Dict[str, NotificationTemplate] = {}
        self._load_default_templates()

    def _load_default_templates(self) -> None:
        for language, templates in _ALERT_TEMPLATES.items():
            for alert_type, body in templates.items():
                self.add_template(NotificationTemplate(
                    template_id=f"sms_{alert_type}_{language}",
                    language=language,
                    body_template=body,
                ))
        for language, body in _REMINDER_TEMPLATES.items():
            self.add_template(NotificationTemplate(
                template_id=f"reminder_{language}",
                language=language,
                body_template=body,
            ))

    def add_template(self, template: NotificationTemplate) -> None:
        self.templates[template.template_id] = template

    def get_template(self, template_id: str) -> Optional[NotificationTemplate]:
        return self.templates.get(template_id)

    def resolve_language(self, language: Optional[str]) -> str:
        if language in SUPPORTED_LANGUAGES:
            return language
        return self.config.default_language if self.config.default_language in SUPPORTED_LANGUAGES else "sw"

    def render_alert_sms(self, alert: Alert, language: Optional[str] = None, now: Optional[datetime] = None) -> str:
        """
        Render the SMS body for an alert.

        Args:
            alert: Alert to render
            language: Subscriber language ('sw' or 'en')
            now: Reference time for relative dates

        Returns:
            Message text including signature, capped to the SMS length limit
        """
        language = self.resolve_language(language)
        template = (
            self.get_template(f"sms_{alert.type.value}_{language}")
            or self.get_template(f"sms_default_{language}")
        )
        body = template.render(self._create_alert_context(alert, language, now))
        return truncate_message(body, self.config.signature, self.config.max_length)

    def render_digest(self, summary: List[Dict[str, Any]], language: Optional[str] = None) -> str:
        """Render the daily digest from grouped alert summary rows."""
        text = _DIGEST_TEXT[self.resolve_language(language)]
        lines = [text["header"], ""]
        if not summary:
            lines.append(text["none"])
        else:
            lines.append(text["count"].format(count=len(summary)))
            lines.append("")
            for row in summary:
                lines.append(f"• {row['region']}: {row['type']} ({row['severity']})")
        return truncate_message("\n".join(lines), self.config.signature, self.config.digest_max_length)

    def render_expiry_reminder(self, plan: str, days_left: int, language: Optional[str] = None) -> str:
        template = self.get_template(f"reminder_{self.resolve_language(language)}")
        body = template.render({"plan": plan, "days_left": days_left})
        return truncate_message(body, self.config.signature, self.config.digest_max_length)

    def _create_alert_context(self, alert: Alert, language: str, now: Optional[datetime]) -> Dict[str, Any]:
        metadata = alert.metadata or {}
        return {
            "title": alert.title,
            "region": alert.region,
            "description": alert.description,
            "severity": alert.severity.value,
            "when": format_when(alert.forecast_date, language, now),
            "days_without_rain": metadata.get("days_without_rain"),
            "wind_speed": metadata.get("wind_speed"),
            "max_temp": metadata.get("max_temp"),
            "consecutive_days": metadata.get("consecutive_days"),
            "swarm_size": metadata.get("swarm_size"),
            "affected_crops": metadata.get("affected_crops"),
        }


def format_when(forecast_date: Optional[datetime], language: str = "en", now: Optional[datetime] = None) -> str:
    """Relative, human-friendly time until a forecast date."""
    text = _WHEN_TEXT.get(language, _WHEN_TEXT["en"])
    if forecast_date is None:
        return text["soon"]
    hours = round_half_up((forecast_date - (now or utc_now())).total_seconds() / 3600)
    if hours < 24:
        return text["hours"].format(n=max(0, hours))
    if hours < 48:
        return text["tomorrow"]
    return text["days"].format(n=round_half_up(hours / 24))

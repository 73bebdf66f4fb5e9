import logging
from typing import Any, Dict, Optional

import requests

from .dispatch import BackgroundDispatcher
from .models import MagicLink

logger = logging.getLogger(__name__)


def build_invite_payload(link: MagicLink, base_url: str, contractor_email: str,
                         contractor_name: Optional[str], project_name: Optional[str]) -> Dict[str, Any]:
    return {
        "recipient": contractor_email,
        "contractor_name": contractor_name or "Contractor",
        "project_name": project_name or "Project",
        "snag_count": len(link.snag_ids),
        "access_level": link.access_level.value,
        "link_url": f"{base_url}/link/{link.token}",
        "expires_at": link.expires_at,
    }


class WebhookNotifier:
    """Posts contractor invitations to a webhook on the background dispatcher."""

    def __init__(self, url: str, dispatcher: BackgroundDispatcher, timeout: int = 5):
        self.url = url
        self.timeout = timeout
        self._dispatcher = dispatcher

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def notify_link_created(self, link: MagicLink, base_url: str, contractor_email: Optional[str],
                            contractor_name: Optional[str] = None,
                            project_name: Optional[str] = None) -> bool:
        if not self.enabled or not contractor_email:
            return False
        payload = build_invite_payload(link, base_url, contractor_email, contractor_name, project_name)
        return self._dispatcher.submit("notify", self._post, link.id, payload)

    def _post(self, link_id: str, payload: Dict[str, Any]) -> None:
        try:
            r = requests.post(self.url, json=payload, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            logger.warning("contractor notification for link %s failed: %s", link_id, e)
            return
        logger.info("contractor notification sent for link %s", link_id)

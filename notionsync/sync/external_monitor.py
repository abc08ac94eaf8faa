"""
Delivery of sync status reports to external monitoring.

The per-item status report (failed nodes, failed media, broken links) can be
pushed to any HTTP endpoint after a post-batch sweep, so a dashboard or alert
channel sees partial failures without anyone reading the logs.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from .error_tracker import ConfigurationError
from .logging_manager import get_logger

logger = get_logger(__name__)


def report_has_failures(report: Dict[str, Any]) -> bool:
    return bool(report.get('failed_nodes') or report.get('failed_media') or report.get('broken_links'))


class ExternalMonitor(ABC):

    @abstractmethod
    def send_report(self, report: Dict[str, Any]) -> bool:
        pass


class WebhookMonitor(ExternalMonitor):
    """
    Posts the status report as JSON to a webhook endpoint.
    With ``only_on_failure`` clean runs are not reported.
    """
    def __init__(self, endpoint_url: str, headers: Optional[Dict[str, str]] = None, timeout: int = 10,
                 only_on_failure: bool = False):
        self.endpoint_url = endpoint_url
        self.headers = headers or {'Content-Type': 'application/json'}
        self.timeout = timeout
        self.only_on_failure = only_on_failure

    def send_report(self, report: Dict[str, Any]) -> bool:
        if self.only_on_failure and not report_has_failures(report):
            logger.debug("Sync report has no failures, not sending")
            return False
        try:
            response = requests.post(
                self.endpoint_url,
                data=json.dumps(report, default=str),
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send report to webhook {self.endpoint_url}: {e}")
            return False
        logger.info(f"Sent sync report to webhook: {self.endpoint_url}")
        return True


def get_monitor_from_config(config) -> Optional[ExternalMonitor]:
    if not getattr(config, 'monitoring', None):
        return None

    monitor_config = config.monitoring
    monitor_type = monitor_config.get('type')

    if monitor_type == 'webhook':
        endpoint = monitor_config.get('endpoint_url')
        if not endpoint:
            raise ConfigurationError("webhook monitoring requires an endpoint_url")
        return WebhookMonitor(
            endpoint_url=endpoint,
            headers=monitor_config.get('headers'),
            timeout=monitor_config.get('timeout', 10),
            only_on_failure=monitor_config.get('only_on_failure', False),
        )

    logger.warning(f"Unknown monitor type: {monitor_type}")
    return None

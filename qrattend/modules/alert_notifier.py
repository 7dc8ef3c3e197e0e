"""
Alert Notifier Module - QR Attendance Gate

This module delivers operator alerts for suspicious activity and maintenance
runs. Alerts are queued and handled by a background worker, rendered with
Jinja2 templates, kept in a bounded in-memory buffer for the admin dashboard
and optionally e-mailed to an operator address.

Features:
- Background alert queue
- Severity mapping from risk scores
- Jinja2 e-mail templates
- SMTP delivery when configured
- Recent alert buffer for operators
"""

import smtplib
import ssl
import logging
import threading
from collections import deque
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from queue import Queue
from typing import Any, Dict, List, Optional

from jinja2 import Template


@dataclass
class AlertData:
    """Data structure for an operator alert."""
    type: str
    title: str
    message: str
    severity: str
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    is_sent: bool = False


class AlertNotifier:
    """
    Queues and delivers operator alerts.
    """

    ALERT_SUSPICIOUS = 'suspicious_activity'
    ALERT_MAINTENANCE = 'maintenance'

    SEVERITY_INFO = 'info'
    SEVERITY_WARNING = 'warning'
    SEVERITY_CRITICAL = 'critical'

    def __init__(self, email_config: Optional[Dict[str, Any]] = None,
                 async_delivery: bool = True, buffer_size: int = 200):
        """
        Initialize the notifier.

        Args:
            email_config (dict): smtp_server, smtp_port, username, password,
                use_tls, recipient. Delivery is skipped when incomplete.
            async_delivery (bool): Handle alerts on a background thread
            buffer_size (int): Number of recent alerts kept in memory
        """
        self.logger = logging.getLogger(__name__)
        self.email_config = {
            'smtp_server': '',
            'smtp_port': 587,
            'username': '',
            'password': '',
            'use_tls': True,
            'recipient': ''
        }
        if email_config:
            self.email_config.update(email_config)

        self.templates = {
            self.ALERT_SUSPICIOUS: self._get_suspicious_activity_template(),
            self.ALERT_MAINTENANCE: self._get_maintenance_template()
        }

        self.recent_alerts = deque(maxlen=buffer_size)
        self._lock = threading.Lock()

        self.async_delivery = async_delivery
        self.alert_queue = Queue()
        self.alert_processor = None
        if async_delivery:
            self.alert_processor = threading.Thread(
                target=self._process_alerts,
                daemon=True
            )
            self.alert_processor.start()

    def severity_for_risk(self, risk_score: int) -> str:
        if risk_score >= 80:
            return self.SEVERITY_CRITICAL
        if risk_score >= 50:
            return self.SEVERITY_WARNING
        return self.SEVERITY_INFO

    def send_suspicious_activity_alert(self, event: Dict[str, Any]) -> bool:
        """
        Queue an alert for a flagged activity event.

        Args:
            event (dict): user_id, reason, risk_score, ip_address,
                device_fingerprint, details

        Returns:
            bool: Whether the alert was accepted
        """
        try:
            alert = AlertData(
                type=self.ALERT_SUSPICIOUS,
                title=f"Suspicious activity: {event.get('reason', 'unknown')}",
                message=(f"User {event.get('user_id')} flagged with risk score "
                         f"{event.get('risk_score', 0)} from {event.get('ip_address', 'unknown')}"),
                severity=self.severity_for_risk(int(event.get('risk_score', 0))),
                data=event
            )
            self._dispatch(alert)
            return True
        except Exception as e:
            self.logger.error(f"Failed to queue suspicious activity alert: {str(e)}")
            return False

    def send_maintenance_alert(self, summary: Dict[str, Any]) -> bool:
        """Queue an informational alert summarising a maintenance run."""
        try:
            alert = AlertData(
                type=self.ALERT_MAINTENANCE,
                title='Maintenance run completed',
                message=(f"Purged {summary.get('sessions_purged', 0)} session(s) and "
                         f"{summary.get('events_purged', 0)} activity event(s)"),
                severity=self.SEVERITY_INFO,
                data=summary
            )
            self._dispatch(alert)
            return True
        except Exception as e:
            self.logger.error(f"Failed to queue maintenance alert: {str(e)}")
            return False

    def get_recent_alerts(self, limit: int = 20, min_severity: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent alerts first."""
        order = [self.SEVERITY_INFO, self.SEVERITY_WARNING, self.SEVERITY_CRITICAL]
        with self._lock:
            alerts = list(self.recent_alerts)
        alerts.reverse()
        if min_severity in order:
            threshold = order.index(min_severity)
            alerts = [a for a in alerts if order.index(a.severity) >= threshold]
        return [asdict(a) for a in alerts[:limit]]

    def render(self, alert: AlertData) -> str:
        template = Template(self.templates[alert.type])
        return template.render(alert=asdict(alert), system_name="QR Attendance Gate")

    def _dispatch(self, alert: AlertData) -> None:
        if self.async_delivery:
            self.alert_queue.put(alert)
        else:
            self._handle_alert(alert)

    def _process_alerts(self) -> None:
        """Background thread draining the alert queue."""
        while True:
            alert = self.alert_queue.get()
            if alert is None:
                break
            try:
                self._handle_alert(alert)
            except Exception as e:
                self.logger.error(f"Error processing alert: {str(e)}")
            finally:
                self.alert_queue.task_done()

    def _handle_alert(self, alert: AlertData) -> None:
        with self._lock:
            self.recent_alerts.append(alert)

        if alert.severity == self.SEVERITY_INFO:
            self.logger.info(alert.title)
        else:
            self.logger.warning(f"{alert.title} - {alert.message}")

        if self._is_email_configured() and alert.severity != self.SEVERITY_INFO:
            alert.is_sent = self._send_email_alert(alert)

    def _is_email_configured(self) -> bool:
        return all([
            self.email_config['smtp_server'],
            self.email_config['username'],
            self.email_config['password'],
            self.email_config['recipient']
        ])

    def _send_email_alert(self, alert: AlertData) -> bool:
        try:
            msg = MIMEMultipart()
            msg['From'] = self.email_config['username']
            msg['To'] = self.email_config['recipient']
            msg['Subject'] = f"QR Attendance Gate - {alert.title}"
            msg.attach(MIMEText(self.render(alert), 'html'))

            with smtplib.SMTP(self.email_config['smtp_server'], self.email_config['smtp_port']) as server:
                if self.email_config['use_tls']:
                    server.starttls(context=ssl.create_default_context())
                server.login(self.email_config['username'], self.email_config['password'])
                server.send_message(msg)

            self.logger.info(f"Alert e-mail sent to {self.email_config['recipient']}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to send alert e-mail: {str(e)}")
            return False

    def _get_suspicious_activity_template(self) -> str:
        return """
        <html>
        <body style="font-family: Arial, sans-serif;">
            <h2 style="color: {% if alert.severity == 'critical' %}#dc3545{% else %}#ffc107{% endif %};">
                {{ alert.title }}
            </h2>
            <p><strong>User:</strong> {{ alert.data.user_id }}</p>
            <p><strong>Risk score:</strong> {{ alert.data.risk_score }}</p>
            <p><strong>Network origin:</strong> {{ alert.data.ip_address }}</p>
            <p><strong>Device:</strong> {{ alert.data.device_fingerprint }}</p>
            {% if alert.data.details %}
            <ul>
            {% for key, value in alert.data.details.items() %}
                <li><strong>{{ key }}:</strong> {{ value }}</li>
            {% endfor %}
            </ul>
            {% endif %}
            <hr>
            <p style="color: #6c757d; font-size: 12px;">
                Generated by {{ system_name }} on {{ alert.created_at }}
            </p>
        </body>
        </html>
        """

    def _get_maintenance_template(self) -> str:
        return """
        <html>
        <body style="font-family: Arial, sans-serif;">
            <h2 style="color: #007bff;">{{ alert.title }}</h2>
            <p>{{ alert.message }}</p>
            <hr>
            <p style="color: #6c757d; font-size: 12px;">
                Generated by {{ system_name }} on {{ alert.created_at }}
            </p>
        </body>
        </html>
        """

    def shutdown(self) -> None:
        """Stop the background worker."""
        if self.alert_processor and self.alert_processor.is_alive():
            self.alert_queue.put(None)
            self.alert_processor.join(timeout=5)
        self.logger.info("Alert notifier shut down")

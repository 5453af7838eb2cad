from checkmesh.models.monitor import Monitor
from checkmesh.models.check_result import CheckResult
from checkmesh.models.incident import Incident
from checkmesh.models.alert_recipient import AlertRecipient
from checkmesh.models.monitor_log import MonitorLog

__all__ = ["Monitor", "CheckResult", "Incident", "AlertRecipient", "MonitorLog"]

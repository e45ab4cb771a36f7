# authwatch/rule_engine.py
from typing import Dict

# Risk is decided by alert type alone, never by message content
RISK_BY_ALERT_TYPE: Dict[str, str] = {
    "ssh": "high",
    "privilege": "critical",
    "console": "medium",
    "gui": "low",
    "msfconsole": "info",
    "unknown": "low",
}

DEFAULT_RISK = "low"


def calculate_risk(alert_type: str) -> str:
    """Return the risk level for an alert type, "low" for anything unlisted."""
    return RISK_BY_ALERT_TYPE.get(alert_type, DEFAULT_RISK)

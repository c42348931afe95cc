"""
Notification sinks.

Deliver threshold alerts. Delivery is best-effort: ``post`` reports
success as a bool and callers only log failures.
"""

from typing import Dict, Optional

from rich.console import Console
from rich.panel import Panel


class ConsoleNotificationSink:
    """Prints alerts as rich panels.

    An alert whose identifier and body were already shown is not printed
    again, the way desktop notification centers collapse identical ids.
    """

    def __init__(self, console: Optional[Console] = None, authorized: bool = True):
        self.console = console or Console(stderr=True)
        self.authorized = authorized
        self.delivered: Dict[str, str] = {}

    def is_authorized(self) -> bool:
        return self.authorized

    def post(self, identifier: str, title: str, body: str) -> bool:
        if self.delivered.get(identifier) == body:
            return True
        style = "red" if ".danger" in identifier else "yellow"
        self.console.print(Panel(body, title=title, border_style=style))
        self.delivered[identifier] = body
        return True

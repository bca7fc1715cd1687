"""Clinicore background jobs service.

Recurring clinic performance reports and appointment reminders, driven by a
durable job store and exposed through a small FastAPI surface.
"""

__all__: list[str] = []

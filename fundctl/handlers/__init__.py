from .reconcile_handlers import reconcile, diagnose
from .forecast_handlers import forecast
from .admin_handlers import db_migrate, db_reset

__all__ = [
    "reconcile",
    "diagnose",
    "forecast",
    "db_migrate",
    "db_reset",
]

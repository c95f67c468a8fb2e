"""
Proofline utility modules.
"""
from proofline.utils.timeutils import utc_now, ensure_utc, minutes_between, add_minutes, local_wall_time

__all__ = ["utc_now", "ensure_utc", "minutes_between", "add_minutes", "local_wall_time"]

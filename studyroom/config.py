"""Application configuration.

Values are read from environment variables, with a local ``.env`` file loaded
first when present. The study-day clock, grace period, absence buffer and the
auto-penalty rules all live here so a branch can be tuned without touching the
attendance code.
"""

import os
from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    """Settings shared by the API, the attendance logic and the tests."""

    load_dotenv()

    # Heroku-style URLs still start with ``postgres://``; SQLAlchemy wants
    # ``postgresql://``.
    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///./studyroom.db'

    API_KEY = os.environ.get('STUDYROOM_API_KEY', 'studyroom-secret')

    TIMEZONE = os.environ.get('STUDYROOM_TIMEZONE', 'Asia/Seoul')

    # Study day runs 07:30 -> 01:30 the next morning.
    STUDY_DAY_START = os.environ.get('STUDY_DAY_START', '07:30')
    STUDY_DAY_CUTOVER = os.environ.get('STUDY_DAY_CUTOVER', '01:30')
    WEEK_STARTS_ON = _int_env('WEEK_STARTS_ON', 0)  # 0=Sunday, 1=Monday

    GRACE_PERIOD_MINUTES = _int_env('GRACE_PERIOD_MINUTES', 15)
    ABSENCE_BUFFER_MINUTES = _int_env('ABSENCE_BUFFER_MINUTES', 60)

    LATE_PENALTY_AMOUNT = _int_env('LATE_PENALTY_AMOUNT', 1)
    LATE_PENALTY_REASON = os.environ.get('LATE_PENALTY_REASON', '지각')
    EARLY_LEAVE_PENALTY_AMOUNT = _int_env('EARLY_LEAVE_PENALTY_AMOUNT', 1)
    EARLY_LEAVE_PENALTY_REASON = os.environ.get('EARLY_LEAVE_PENALTY_REASON', '조기퇴실')

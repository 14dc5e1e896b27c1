"""Application configuration module.

This module reads environment variables to configure the Flask application,
the database and the grade-anomaly rules. When deployed on Heroku the platform
provides a ``DATABASE_URL`` environment variable that points to a Postgres
database. Recent versions of SQLAlchemy expect the URL to start with
``postgresql://`` rather than ``postgres://``, so the prefix is normalised
below. Variables defined in a local ``.env`` file are loaded when running
locally.
"""

import os
from dotenv import load_dotenv


def _float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


def _int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except ValueError:
        return default


class Config:
    """Base configuration class.

    SQLAlchemy reads ``SQLALCHEMY_DATABASE_URI`` from this class. If no
    database URL is provided the application falls back to a local SQLite
    database so the app still runs in development. The ``ANOMALY_*`` values
    feed :class:`anomalies.AnomalyThresholds`.
    """

    # Load environment variables from a .env file if present. On Heroku
    # variables are set via ``heroku config``.
    load_dotenv()

    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret-in-prod')

    _db_url = os.environ.get('DATABASE_URL', '')
    if _db_url.startswith('postgres://'):
        # Only replace the first occurrence to avoid touching paths that may
        # legitimately contain the substring.
        _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
    SQLALCHEMY_DATABASE_URI = _db_url or 'sqlite:///gradecentral.db'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    # Share of requests that get access records, clamped to 0..1.
    REQUEST_LOG_SAMPLE_RATE = min(1.0, max(0.0, _float('REQUEST_LOG_SAMPLE_RATE', 1.0)))
    RESPONSE_BODY_MAX_BYTES = max(0, _int('RESPONSE_BODY_MAX_BYTES', 2048))

    # Grade-anomaly rules. The historical and missing-data thresholds are
    # prose ranges in the marking guidelines; these are the working defaults.
    ANOMALY_UNIFORM_MIN_COHORT = _int('ANOMALY_UNIFORM_MIN_COHORT', 5)
    ANOMALY_OUTLIER_STDDEVS = _float('ANOMALY_OUTLIER_STDDEVS', 2.5)
    ANOMALY_OUTLIER_MIN_GAP = _float('ANOMALY_OUTLIER_MIN_GAP', 10.0)
    ANOMALY_HISTORICAL_DEVIATION = _float('ANOMALY_HISTORICAL_DEVIATION', 17.5)
    ANOMALY_MISSING_RATIO = _float('ANOMALY_MISSING_RATIO', 0.2)
    ANOMALY_PASS_MARK = _float('ANOMALY_PASS_MARK', 50.0)
    ANOMALY_CLUSTER_BAND = _float('ANOMALY_CLUSTER_BAND', 5.0)
    ANOMALY_CLUSTER_SHARE = _float('ANOMALY_CLUSTER_SHARE', 0.3)
    ANOMALY_EXTREME_SHARE = _float('ANOMALY_EXTREME_SHARE', 0.4)

    # Teacher dashboard windows, in days.
    DEADLINE_WARNING_DAYS = _int('DEADLINE_WARNING_DAYS', 3)
    RECENT_SUBMISSION_DAYS = _int('RECENT_SUBMISSION_DAYS', 7)

    # Report-card header and next-term logistics.
    SCHOOL_NAME = os.environ.get('SCHOOL_NAME', 'GradeCentral School')
    SCHOOL_ADDRESS = os.environ.get('SCHOOL_ADDRESS', '')
    SCHOOL_LOCATION = os.environ.get('SCHOOL_LOCATION', '')
    SCHOOL_PHONE = os.environ.get('SCHOOL_PHONE', '')
    SCHOOL_EMAIL = os.environ.get('SCHOOL_EMAIL', '')
    SCHOOL_LOGO_URL = os.environ.get('SCHOOL_LOGO_URL', '')
    SCHOOL_THEME = os.environ.get('SCHOOL_THEME', '')
    NEXT_TERM_BEGINS = os.environ.get('NEXT_TERM_BEGINS', '')
    NEXT_TERM_ENDS = os.environ.get('NEXT_TERM_ENDS', '')
    NEXT_TERM_FEES = os.environ.get('NEXT_TERM_FEES', '')

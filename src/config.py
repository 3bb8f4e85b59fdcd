"""Configuration settings for the blood bank lifecycle service."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "bloodbank_pass")
    user = os.environ.get("DB_USER", "bloodbank_user")
    db_name = os.environ.get("DB_NAME", "bloodbank_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_matching_settings():
    """Radius and fan-out cap used when matching donors to a new request."""
    return dict(
        radius_meters=int(os.environ.get("MATCH_RADIUS_METERS", 50000)),
        max_donors=int(os.environ.get("MATCH_MAX_DONORS", 20)),
    )


def get_request_expiry_days():
    return int(os.environ.get("REQUEST_EXPIRY_DAYS", 7))


def get_donation_interval_days():
    """Minimum days between two donations of the same donor."""
    return int(os.environ.get("DONATION_INTERVAL_DAYS", 56))


def get_sweep_interval_seconds():
    return int(os.environ.get("EXPIRY_SWEEP_INTERVAL_SECONDS", 300))

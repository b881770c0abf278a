"""Health checks: scheduled diagnostic queries per resource and their incidents."""

# Quick reference commands (run from repo root). These are comments only; copy/paste as needed.

# Install the package with test dependencies (includes httpx for TestClient)
# python -m pip install -e ".[test]"

# Run the full test suite
# python -m pytest

# Run focused test files
# python -m pytest tests/test_normalizer.py tests/test_search_engine.py
# python -m pytest tests/test_cache.py
# python -m pytest tests/test_alert_matcher.py tests/test_alert_dispatcher.py
# python -m pytest tests/test_api.py tests/test_security_headers.py
# python -m pytest tests/test_cli.py

# Start the API locally (with env vars loaded)
# python -m dotenv run -- python -m uvicorn app.api:app --reload

# Run the background worker (match saved searches + send alert emails, every WORKER_INTERVAL_SECONDS)
# python -m dotenv run -- python main.py

# Operator CLI
# python -m worker.cli --alerts --dry-run
# python -m worker.cli --emails --limit 50
# python -m worker.cli --emails --loop --max-runtime 300
# python -m worker.cli --cleanup --days 30
# python -m worker.cli --stats
# python -m worker.cli --retry-failed 42

# Seed a local SQLite database with demo data
# python scripts/seed_listings.py

# Inspect the database (example queries)
# python scripts/db_shell.py "SELECT id, name, last_notified_at FROM saved_searches"
# python scripts/db_shell.py "SELECT status, COUNT(*) AS n FROM alert_queue GROUP BY status"

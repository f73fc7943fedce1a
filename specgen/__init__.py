import os

from dotenv import load_dotenv

# Under pytest the suite sets keys itself; a developer's .env must not leak in
if not os.getenv("PYTEST_CURRENT_TEST"):
	load_dotenv(os.getenv("SPECGEN_ENV_FILE", ".env"), override=False)

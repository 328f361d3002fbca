import os
from pathlib import Path


def _load_dotenv_if_needed() -> None:
	# Tests stay offline and deterministic: never read .env under pytest
	if os.getenv("PYTEST_CURRENT_TEST"):
		return
	env_path = Path(os.getenv("GEMS_ENV_FILE", ".env"))
	if not env_path.is_file():
		return
	try:
		lines = env_path.read_text(encoding="utf-8").splitlines()
	except OSError:
		return
	for line in lines:
		s = line.strip()
		if not s or s.startswith("#") or "=" not in s:
			continue
		if s.startswith("export "):
			s = s[len("export "):].lstrip()
		key, val = s.split("=", 1)
		key = key.strip()
		val = val.strip()
		if len(val) >= 2 and val[0] == val[-1] and val[0] in ("'", '"'):
			val = val[1:-1]
		# Values already in the environment win
		if key and key not in os.environ:
			os.environ[key] = val


_load_dotenv_if_needed()

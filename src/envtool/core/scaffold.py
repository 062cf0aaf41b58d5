"""
Project bootstrapping: key files, env files, config, symlinks and CI keys.
"""

import logging
import os
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .config import CONFIG_FILE
from .lexer import get_keys, parse, serialize_record
from .loader import KEYS_FILE, DotenvxCLI, EnvFileError, load_env_file

logger = logging.getLogger("envtool.core.scaffold")

LOCAL_ENV_FILE = ".env.local"
PRIVATE_KEY_PREFIX = "DOTENV_PRIVATE_"

KEYS_FILE_HEADER = """\
#/------------------!DOTENV_PRIVATE_KEYS!-------------------/
#/ private decryption keys. DO NOT commit to source control /
#/     [how it works](https://dotenvx.com/encryption)       /
#/----------------------------------------------------------/
"""

DEFAULT_CONFIG = """\
[envFiles]
dev = ".env.development"
prod = ".env.production"

[typegen]
output = "./src/env.ts"
schema = "valibot"
publicPrefix = ["VITE_", "PUBLIC_"]

# [sync.convex]
# exclude = ["CONVEX_*"]

# [sync.wrangler]
# config = "./wrangler.jsonc"
# exclude = ["VITE_*"]
"""

GITIGNORE_RULES = """
# envtool
.env.keys
.env.local
.env*.local
"""

Step = Tuple[str, str]  # (status, message); status is one of created/skipped/warning


class SetupError(Exception):
    """Bootstrapping cannot proceed."""


def keys_file_content(entries: Dict[str, str]) -> str:
    lines = [f"{key}={value}" for key, value in entries.items()]
    return KEYS_FILE_HEADER + "\n" + "\n".join(lines) + "\n"


def private_keys_from_environ(environ: Mapping[str, str]) -> Dict[str, str]:
    return {
        key: value
        for key, value in sorted(environ.items())
        if key.startswith(PRIVATE_KEY_PREFIX) and value
    }


def write_local_env(record: Dict[str, str], project_root: Path) -> Path:
    """Write the decrypted dev record to .env.local."""
    path = Path(project_root) / LOCAL_ENV_FILE
    path.write_text(serialize_record(record) + "\n")
    return path


def link_local_env(project_root: Path, links: List[str]) -> List[Step]:
    """
    Symlink .env.local into each linked directory.

    Existing correct links are left alone; regular files are never
    replaced.
    """
    root = Path(project_root)
    source = root / LOCAL_ENV_FILE
    steps: List[Step] = []

    for link_dir in links:
        directory = root / link_dir
        if not directory.is_dir():
            steps.append(("warning", f"link target {link_dir} is not a directory"))
            continue

        target = directory / LOCAL_ENV_FILE
        relative = os.path.relpath(source, directory)
        if target.is_symlink():
            if os.readlink(target) == relative:
                steps.append(("skipped", f"{link_dir}/{LOCAL_ENV_FILE} (already linked)"))
                continue
            target.unlink()
        elif target.exists():
            steps.append(("warning", f"{link_dir}/{LOCAL_ENV_FILE} exists and is not a symlink"))
            continue

        target.symlink_to(relative)
        steps.append(("created", f"link {link_dir}/{LOCAL_ENV_FILE} -> {relative}"))

    return steps


def _init_keys(cwd: Path, home: Path, environ: Mapping[str, str]) -> Step:
    keys_path = cwd / KEYS_FILE
    global_keys = home / KEYS_FILE

    if keys_path.is_symlink() or keys_path.exists():
        if keys_path.is_symlink() and Path(os.readlink(keys_path)) == global_keys:
            return "skipped", f"{KEYS_FILE} (already linked)"
        return "skipped", f"{KEYS_FILE} (exists)"

    if global_keys.exists():
        keys_path.symlink_to(global_keys)
        return "created", f"link {KEYS_FILE} -> ~/{KEYS_FILE}"

    from_env = private_keys_from_environ(environ)
    if from_env:
        keys_path.write_text(keys_file_content(from_env))
        return "created", f"{KEYS_FILE} (from env vars)"

    return "warning", f"~/{KEYS_FILE} not found, create it or set DOTENV_PRIVATE_KEY_* env vars"


def _write_if_missing(path: Path, content: str, force: bool) -> Step:
    if path.exists() and not force:
        return "skipped", f"{path.name} (exists)"
    path.write_text(content)
    return "created", path.name


def init_project(
    cwd: Path,
    home: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    force: bool = False,
    decryptor: Optional[DotenvxCLI] = None,
) -> List[Step]:
    """
    Initialize envtool in a project directory.

    Order matters: the key file comes first so the existing development
    file can be decrypted into .env.local.

    Returns:
        The steps taken, in order
    """
    cwd = Path(cwd)
    home = Path(home) if home else Path.home()
    environ = os.environ if environ is None else environ
    steps: List[Step] = [_init_keys(cwd, home, environ)]

    dev_path = cwd / ".env.development"
    dev_existed = dev_path.exists()
    steps.append(_write_if_missing(dev_path, "# Development environment\n", force))

    local_path = cwd / LOCAL_ENV_FILE
    if dev_existed and (not local_path.exists() or force):
        try:
            record = load_env_file(str(dev_path), str(cwd / KEYS_FILE), decryptor, environ)
        except EnvFileError as e:
            logger.debug("decrypting %s failed: %s", dev_path, e)
            steps.append(("warning", f"{LOCAL_ENV_FILE} skipped (decrypt failed, missing {KEYS_FILE}?)"))
        else:
            write_local_env(record, cwd)
            steps.append(("created", f"{LOCAL_ENV_FILE} (decrypted from .env.development)"))
    elif local_path.exists():
        steps.append(("skipped", f"{LOCAL_ENV_FILE} (exists)"))

    steps.append(_write_if_missing(cwd / ".env.production", "# Production environment\n", force))
    steps.append(_write_if_missing(cwd / CONFIG_FILE, DEFAULT_CONFIG, force))

    gitignore = cwd / ".gitignore"
    if gitignore.exists():
        content = gitignore.read_text()
        if KEYS_FILE in content:
            steps.append(("skipped", ".gitignore (rules exist)"))
        else:
            gitignore.write_text(content + GITIGNORE_RULES)
            steps.append(("created", "update .gitignore"))
    else:
        gitignore.write_text(GITIGNORE_RULES.lstrip())
        steps.append(("created", ".gitignore"))

    return steps


def install_github_action(
    keys_path: str = KEYS_FILE,
    repo: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Make the DOTENV private keys available to GitHub Actions.

    With a local keys file, every DOTENV_PRIVATE_* entry is stored as a
    repository secret through ``gh secret set``. Without one (in CI), the
    keys file is written from the DOTENV_PRIVATE_* environment variables.

    Returns:
        A success message

    Raises:
        SetupError: If no keys are found or ``gh`` fails
    """
    environ = os.environ if environ is None else environ
    path = Path(keys_path)

    if path.exists():
        keys = get_keys(parse(path.read_text()))
        targets = {key: value for key, value in keys.items() if key.startswith(PRIVATE_KEY_PREFIX)}
        if not targets:
            raise SetupError(f"No {PRIVATE_KEY_PREFIX}* keys found in {keys_path}")

        for name, private_key in targets.items():
            if not private_key:
                raise SetupError(f"{name} is empty in {keys_path}")

            args = ["gh", "secret", "set", name, "-b", private_key]
            if repo:
                args.extend(["--repo", repo])
            try:
                result = subprocess.run(args, capture_output=True, text=True)
            except FileNotFoundError as e:
                raise SetupError("gh (GitHub CLI) is not installed") from e
            if result.returncode != 0:
                raise SetupError(result.stderr.strip() or f"gh secret set failed for {name}")

        return f"GitHub Actions secrets set from {len(targets)} {PRIVATE_KEY_PREFIX}* keys"

    from_env = private_keys_from_environ(environ)
    if not from_env:
        raise SetupError(f"No {PRIVATE_KEY_PREFIX}* keys found")

    path.write_text(keys_file_content(from_env))
    return f"create {keys_path} (from env vars)"

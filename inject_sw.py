"""
Inject Service Worker
=====================
Adds offline caching to a static website. Given a directory containing an
index.html, it:

  1. inserts <script src="{base}register-sw.js"></script> before </head>
  2. writes register-sw.js, which registers {base}sw.js with scope {base}
  3. writes sw.js, which precaches every file in the directory under a
     fresh version key and answers requests cache-first

Usage:
    inject-sw                          # current directory, served at /
    inject-sw dist
    inject-sw dist --base /my-app/
    inject-sw dist --ignore drafts,notes.txt

Re-running is safe: the script tag is only inserted once, while both
generated scripts are rewritten and sw.js gets a new version every run.
Browsers then install the new worker and drop the caches of old versions.

Steps run in order (HTML patch, registration script, service worker) and
stop at the first failure. Nothing is rolled back, so a failure in a later
step leaves the earlier files updated.
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import NoReturn

from pydantic import BaseModel, ValidationError, field_validator

__version__ = "0.2.0"

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

INDEX_HTML = "index.html"
REGISTER_SCRIPT = "register-sw.js"
SERVICE_WORKER = "sw.js"
VERSION_PREFIX = "version-"  # Cache keys owned by this tool start with this

# Never precache the generated scripts themselves: a cached sw.js would pin
# browsers to a stale worker.
GENERATED_FILES = (SERVICE_WORKER, REGISTER_SCRIPT)

HEAD_CLOSE = "</head>"

# Service worker source. Rendered with str.format, so literal JS braces
# are doubled.
SERVICE_WORKER_TEMPLATE = """\
const VERSION = "{version_prefix}{version}";
const ASSETS = {assets};

self.addEventListener("install", (event) => event.waitUntil(install()));
self.addEventListener("activate", (event) => event.waitUntil(activate()));
self.addEventListener("fetch", (event) => event.respondWith(respond(event.request)));

async function install() {{
  self.skipWaiting();
  const cache = await caches.open(VERSION);
  await cache.addAll(ASSETS);
  await deleteOldVersions();
}}

async function activate() {{
  self.clients.claim();
  await deleteOldVersions();
}}

async function respond(request) {{
  const cache = await caches.open(VERSION);
  const cached = await cache.match(request);
  return cached || fetch(request);
}}

async function deleteOldVersions() {{
  const versions = await getInstalledVersions();
  const past_versions = versions.filter((key) => key !== VERSION);
  await Promise.all(past_versions.map((key) => caches.delete(key)));
}}

async function getInstalledVersions() {{
  const keys = await caches.keys();
  return keys.filter((key) => key.startsWith("{version_prefix}"));
}}
"""

REGISTRATION_TEMPLATE = (
    'navigator.serviceWorker.register("{base}{script}", {{ scope: "{base}" }});'
)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class InjectError(Exception):
    """Base class for failures reported to the user as a single line."""


class IndexReadError(InjectError):
    """index.html is missing or cannot be read."""


class MalformedDocumentError(InjectError):
    """index.html has no </head> to insert the script tag before."""


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InjectInput(BaseModel):
    """Validated command-line input.

    - directory: website root containing index.html
    - base:      URL path the site is served under; always ends with "/"
                 and must start with "/" (an empty value means "/")
    - ignore:    relative paths (files or directories) left out of the
                 precache list, in the same form find_assets() produces:
                 forward slashes, no leading or trailing slash
    """

    directory: str = "."
    base: str = "/"
    ignore: list[str] = []
    quiet: bool = False

    @field_validator("directory")
    @classmethod
    def normalize_directory(cls, v: str) -> str:
        return v.strip() or "."

    @field_validator("base")
    @classmethod
    def normalize_base(cls, v: str) -> str:
        v = v.strip()
        if not v.endswith("/"):
            v += "/"
        if not v.startswith("/"):
            raise ValueError("base path must start with /")
        return v

    @field_validator("ignore", mode="before")
    @classmethod
    def split_ignore(cls, v):
        """Accept "a,b/c" or a list, normalized to find_assets() paths."""
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        paths = []
        for entry in v:
            entry = str(entry).strip().replace("\\", "/")
            if entry.startswith("./"):
                entry = entry[2:]
            entry = entry.strip("/")
            if entry:
                paths.append(entry)
        return paths


class InjectResult(BaseModel):
    """What a run produced, for the CLI summary."""

    index_patched: bool
    version: str
    assets: list[str]


def parse_args(argv: list[str] | None = None) -> InjectInput:
    """Parse CLI arguments and return validated InjectInput.

    Raises pydantic.ValidationError for a bad base path so main() can
    report it the same way as every other failure.
    """
    parser = argparse.ArgumentParser(
        prog="inject-sw",
        usage="%(prog)s [options] [--] [directory]",
        description="Inject service worker into static website.",
        epilog=(
            "Examples:\n"
            "  inject-sw\n"
            "  inject-sw dist\n"
            "  inject-sw dist --base /my-app/\n"
            "  inject-sw dist --ignore drafts,notes.txt\n"
            "\n"
            "Files written inside the directory:\n"
            "  index.html      script tag added before </head> (once)\n"
            "  register-sw.js  registers {base}sw.js with scope {base}\n"
            "  sw.js           precaches every file, new version each run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "directory",
        nargs="?",
        default=".",
        help="path to website directory containing index.html (default: .)",
    )
    parser.add_argument(
        "-b", "--base",
        default="/",
        help="base path for imports and service worker scope (default: /)",
    )
    parser.add_argument(
        "-i", "--ignore",
        default="",
        help="comma separated relative file paths to be ignored",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="only log warnings and errors",
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args(argv)

    return InjectInput(
        directory=args.directory,
        base=args.base,
        ignore=args.ignore,
        quiet=args.quiet,
    )


# ---------------------------------------------------------------------------
# Step 1: Patch index.html
# ---------------------------------------------------------------------------


def script_tag(base: str) -> str:
    """Return the tag that loads the registration script."""
    return f'<script src="{base}{REGISTER_SCRIPT}"></script>'


def insert_tag(document: str, tag: str) -> str:
    """Insert tag right before the first </head>, matching the indentation.

    Looks at most three characters back from </head>:
      "\\n  "  -> tag on its own line, four spaces in
      "\\n\\t" -> tag on its own line, two tabs in
      "\\n"    -> tag on its own line, no indent
    Anything else gets the tag inserted as-is with no extra whitespace.

    Returns the document unchanged if it already contains tag.

    Raises:
        MalformedDocumentError if there is no </head>.
    """
    if tag in document:
        return document

    head = document.find(HEAD_CLOSE)
    if head == -1:
        raise MalformedDocumentError(f"could not find {HEAD_CLOSE} tag")

    before = document[max(0, head - 3):head]
    if before.endswith("\n  "):
        indent = "  "
    elif before.endswith("\n\t"):
        indent = "\t"
    elif before.endswith("\n"):
        indent = ""
    else:
        return document[:head] + tag + document[head:]

    # Reuse the line ending in front of </head> (CRLF or LF).
    eol = head - len(indent) - 1
    newline = "\r\n" if document[eol - 1:eol] == "\r" else "\n"
    insertion = f"{indent}{tag}{newline}{indent}"

    return document[:head] + insertion + document[head:]


def inject_tag(root: str = ".", base: str = "/") -> bool:
    """Add the registration script tag to root/index.html.

    Returns True if index.html was rewritten, False if the tag was
    already there.
    """
    index_path = os.path.join(root, INDEX_HTML)
    # newline="" and surrogateescape write back every byte not part of
    # the tag exactly as read, whatever the line endings or encoding.
    try:
        with open(index_path, encoding="utf-8", errors="surrogateescape", newline="") as f:
            document = f.read()
    except OSError as e:
        raise IndexReadError(f"failed to read {index_path}") from e

    tag = script_tag(base)
    patched = insert_tag(document, tag)
    if patched == document:
        logger.info(f"{INDEX_HTML} already loads {REGISTER_SCRIPT}")
        return False

    with open(index_path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(patched)
    logger.info(f"Inserted {tag} into {index_path}")
    return True


# ---------------------------------------------------------------------------
# Step 2: Registration script
# ---------------------------------------------------------------------------


def registration_script(base: str = "/") -> str:
    return REGISTRATION_TEMPLATE.format(base=base, script=SERVICE_WORKER)


def create_registration_script(root: str = ".", base: str = "/") -> None:
    """Write root/register-sw.js, replacing any previous one."""
    path = os.path.join(root, REGISTER_SCRIPT)
    with open(path, "w", encoding="utf-8") as f:
        f.write(registration_script(base))
    logger.info(f"Wrote {path}")


# ---------------------------------------------------------------------------
# Step 3: Service worker
# ---------------------------------------------------------------------------


def find_assets(
    root: str = ".", ignore: list[str] | None = None, prefix: str = ""
) -> list[str]:
    """List every regular file under root as a relative path.

    Paths use forward slashes and no leading slash (css/style.css). An
    ignored directory is not descended into, so everything below it is
    left out too. Entries are visited in name order so the same tree
    always produces the same list.

    Symlinks and other special files are skipped. A missing or unreadable
    directory raises OSError; there is no partial result.
    """
    ignored = set(ignore or [])
    with os.scandir(root) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    paths: list[str] = []
    for entry in entries:
        path = prefix + entry.name
        if path in ignored:
            logger.debug(f"Ignoring {path}")
            continue
        if entry.is_file(follow_symlinks=False):
            paths.append(path)
        elif entry.is_dir(follow_symlinks=False):
            paths.extend(find_assets(entry.path, ignore, path + "/"))
    return paths


def asset_urls(base: str, paths: list[str]) -> list[str]:
    """Prefix each relative path with base; base itself goes first."""
    return [base] + [f"{base}{path}" for path in paths]


def make_version(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp with milliseconds, e.g. 2024-05-01T12:00:00.000Z."""
    now = now or datetime.now(timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def service_worker_script(version: str, assets: list[str]) -> str:
    return SERVICE_WORKER_TEMPLATE.format(
        version_prefix=VERSION_PREFIX,
        version=version,
        # ASCII escapes keep file names that are not valid UTF-8 writable.
        assets=json.dumps(assets, indent=2, ensure_ascii=True),
    )


def create_service_worker_script(
    root: str = ".",
    ignore: list[str] | None = None,
    base: str = "/",
    version: str | None = None,
) -> list[str]:
    """Enumerate assets and write root/sw.js, replacing any previous one.

    The generated scripts are always excluded from the asset list.

    Returns:
        The asset URLs embedded in sw.js, base first.
    """
    version = version or make_version()
    paths = find_assets(root, [*(ignore or []), *GENERATED_FILES])
    for path in paths:
        logger.debug(f"Caching {path}")
    assets = asset_urls(base, paths)

    sw_path = os.path.join(root, SERVICE_WORKER)
    with open(sw_path, "w", encoding="utf-8") as f:
        f.write(service_worker_script(version, assets))
    logger.info(f"Wrote {sw_path} ({len(assets)} assets, {VERSION_PREFIX}{version})")
    return assets


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def inject(config: InjectInput, version: str | None = None) -> InjectResult:
    """Run all three steps against config.directory.

    The HTML patch runs first, so a missing or malformed index.html stops
    the run before either script is written. Later failures leave earlier
    files as already written.
    """
    version = version or make_version()

    index_patched = inject_tag(config.directory, config.base)
    create_registration_script(config.directory, config.base)
    assets = create_service_worker_script(
        config.directory, config.ignore, config.base, version
    )

    return InjectResult(index_patched=index_patched, version=version, assets=assets)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def _validation_message(e: ValidationError) -> str:
    """First validator message without pydantic's "Value error, " prefix."""
    errors = e.errors()
    if not errors:
        return str(e)
    msg = errors[0].get("msg", str(e))
    return msg.removeprefix("Value error, ")


def fail(message: str) -> NoReturn:
    print(f"error: {message}", file=sys.stderr)
    sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    try:
        config = parse_args(argv)
    except ValidationError as e:
        fail(_validation_message(e))

    logging.basicConfig(
        level=logging.WARNING if config.quiet else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        result = inject(config)
    except (InjectError, OSError) as e:
        fail(str(e))

    if config.quiet:
        return

    print(f"\n{'='*60}")
    print(f"DONE")
    print(f"{'='*60}")
    print(f"  Directory:   {os.path.abspath(config.directory)}")
    print(f"  Base:        {config.base}")
    print(f"  {INDEX_HTML}:  {'patched' if result.index_patched else 'unchanged'}")
    print(f"  Version:     {VERSION_PREFIX}{result.version}")
    print(f"  Assets:      {len(result.assets)}")
    if config.ignore:
        print(f"  Ignored:     {', '.join(config.ignore)}")
    print(f"{'='*60}")


if __name__ == "__main__":
    main()

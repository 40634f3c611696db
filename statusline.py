#!/usr/bin/env python3
"""Claude Code Statusline — subscription usage tracker.

    Model | git branch | 20k/200k | 5h 18% (2h34m) | 7d 32% (3d20h)

Rendering never waits on the network: each run prints from the last cached
usage snapshot and spawns a detached `--fetch-only` child that refreshes the
cache for the next run.

OAuth token lookup order:
  1. CLAUDE_CODE_OAUTH_TOKEN env var
  2. macOS Keychain
  3. Windows Credential Manager (CredReadW)
  4. libsecret via secret-tool (Linux)
  5. ~/.claude/.credentials.json (+ %APPDATA% / %LOCALAPPDATA% on Windows)

Config:  ~/.claude/statusline.toml (optional)
Cache:   ~/.claude/statusline_cache.json
Debug:   STATUSLINE_LOG=/path/to/file.log
"""

import sys, json, os, subprocess, shutil, logging, tempfile
from datetime import datetime, timezone
from pathlib import Path

# ═══════════════════════ CONFIG ═══════════════════════

IS_WIN = sys.platform == "win32"
HOME = Path.home()
SCRIPT_PATH = Path(__file__).resolve()

CACHE_FILE = HOME / ".claude" / "statusline_cache.json"
CREDS_FILE = HOME / ".claude" / ".credentials.json"
SETTINGS_FILE = HOME / ".claude" / "settings.json"
CONFIG_FILE = Path(os.environ.get("STATUSLINE_CONFIG", "~/.claude/statusline.toml")).expanduser()

USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
FETCH_TIMEOUT = 5          # seconds, whole request
GIT_TIMEOUT = 2            # seconds, per git command
PCT_MEDIUM = 50            # yellow from here
PCT_HIGH = 90              # red from here
COLOR_ENABLED = True

TOKEN_ENV = "CLAUDE_CODE_OAUTH_TOKEN"
KEYCHAIN_SERVICE = "Claude Code-credentials"
WIN_CRED_TARGETS = ("Claude Code-credentials", "Claude Code", "claude-code")
FETCH_FLAG = "--fetch-only"
CONSOLE_SCRIPT = "claude-statusline"
NO_DATA = "No data"

USAGE_WINDOWS = (("5h", "five_hour"), ("7d", "seven_day"))

# ═══════════════════════ TOML CONFIG ═══════════════════════

def load_config(path=None):
    """Load optional TOML config, override defaults. Requires tomllib (3.11+) or tomli."""
    global CACHE_FILE, USAGE_URL, FETCH_TIMEOUT, GIT_TIMEOUT
    global PCT_MEDIUM, PCT_HIGH, COLOR_ENABLED

    cfg_path = Path(path) if path else CONFIG_FILE
    if not cfg_path.exists():
        return

    try:
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib  # type: ignore
        with open(cfg_path, "rb") as f:
            cfg = tomllib.load(f)
    except (OSError, ValueError):
        log.debug("ignoring unreadable config %s", cfg_path, exc_info=True)
        return

    c = cfg.get("cache", {})
    if isinstance(c.get("file"), str):
        CACHE_FILE = Path(c["file"]).expanduser()

    f = cfg.get("fetch", {})
    if isinstance(f.get("url"), str) and f["url"]:
        USAGE_URL = f["url"]
    if isinstance(f.get("timeout"), (int, float)) and f["timeout"] > 0:
        FETCH_TIMEOUT = f["timeout"]

    g = cfg.get("git", {})
    if isinstance(g.get("timeout"), (int, float)) and g["timeout"] > 0:
        GIT_TIMEOUT = g["timeout"]

    t = cfg.get("thresholds", {})
    medium = t.get("medium", PCT_MEDIUM)
    high = t.get("high", PCT_HIGH)
    if isinstance(medium, (int, float)) and isinstance(high, (int, float)) and medium <= high:
        PCT_MEDIUM, PCT_HIGH = medium, high

    d = cfg.get("display", {})
    if isinstance(d.get("color"), bool):
        COLOR_ENABLED = d["color"]

# ═══════════════════════ LOGGING ═══════════════════════

log = logging.getLogger("statusline")
log.addHandler(logging.NullHandler())

def setup_logging():
    """Debug log to $STATUSLINE_LOG. stdout is the statusline, so nothing goes there."""
    dest = os.environ.get("STATUSLINE_LOG")
    if not dest:
        return
    logging.basicConfig(
        filename=os.path.expanduser(dest),
        level=logging.DEBUG,
        format="%(asctime)s %(process)d %(levelname)s %(name)s: %(message)s",
    )

load_config()

# ═══════════════════════ ANSI ═══════════════════════

def supports_color():
    if not COLOR_ENABLED or "NO_COLOR" in os.environ:
        return False
    if not IS_WIN:
        return True
    env = os.environ
    return bool(env.get("WT_SESSION") or env.get("TERM_PROGRAM")
                or env.get("ConEmuANSI") == "ON" or env.get("COLORTERM"))

def rgb(r, g, b):
    return f"\033[38;2;{r};{g};{b}m" if USE_COLOR else ""

def set_color(enabled):
    """(Re)bind the palette. Disabled color turns every code into ''."""
    global USE_COLOR, R, DM, TX, BR, DT, GR, YL, RD
    USE_COLOR = enabled
    R  = "\033[0m" if enabled else ""   # Reset
    DM = rgb(108, 112, 134)             # Dim: labels, separator
    TX = rgb(205, 214, 244)             # Text: model, placeholders
    BR = rgb(137, 180, 250)             # Clean branch
    DT = rgb(250, 179, 135)             # Dirty branch
    GR = rgb(166, 227, 161)             # Green
    YL = rgb(249, 226, 175)             # Yellow
    RD = rgb(243, 139, 168)             # Red

set_color(supports_color())

def pcolor(pct):
    """Color for a percentage: green <50, yellow 50-89, red >=90."""
    if pct >= PCT_HIGH: return RD
    if pct >= PCT_MEDIUM: return YL
    return GR

def osc8(url, txt):
    """OSC 8 clickable hyperlink (iTerm2, Kitty, WezTerm, Windows Terminal)."""
    if not USE_COLOR:
        return txt
    return f"\033]8;;{url}\033\\{txt}\033]8;;\033\\"

# ═══════════════════════ HELPERS ═══════════════════════

def fmt_tok(t):
    """Format tokens: 500, 24k, 1.2M."""
    t = max(0, int(t))
    if t >= 1_000_000:
        return f"{t / 1_000_000:.1f}M"
    if t >= 1000:
        return f"{t // 1000}k"
    return str(t)

def parse_iso(s):
    """Parse ISO 8601 to datetime (UTC). Handles Z, +00:00, fractional sec."""
    if not s or not isinstance(s, str) or s == "null":
        return None
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        # Older interpreters choke on nanoseconds and odd fractions
        s2 = s.split(".")[0].rstrip("Z")
        for sep in ("+", "-"):
            idx = s2.rfind(sep)
            if idx > 10:
                s2 = s2[:idx]
                break
        try:
            dt = datetime.strptime(s2, "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

def fmt_reset(resets_at, now=None):
    """Time until reset: (3d20h), (2h34m) or (30m). Never negative."""
    dt = parse_iso(resets_at)
    if dt is None:
        return ""
    now = now or datetime.now(timezone.utc)
    secs = max(0, int((dt - now).total_seconds()))
    h, m = secs // 3600, secs % 3600 // 60
    if h > 24:
        return f"({h // 24}d{h % 24}h)"
    if h > 0:
        return f"({h}h{m}m)"
    return f"({m}m)"

def _run(args, cwd=None, timeout=GIT_TIMEOUT):
    """Run a command, return stripped stdout or '' on any failure."""
    try:
        r = subprocess.run(args, cwd=cwd, capture_output=True, text=True, timeout=timeout)
    except (OSError, ValueError, subprocess.SubprocessError):
        log.debug("command failed: %s", args[0], exc_info=True)
        return ""
    if r.returncode != 0:
        return ""
    return r.stdout.strip()

# ═══════════════════════ GIT ═══════════════════════

def normalize_remote(url):
    """git@github.com:owner/repo.git -> https://github.com/owner/repo"""
    if url.startswith("git@github.com:"):
        url = "https://github.com/" + url[len("git@github.com:"):]
    if url.endswith(".git"):
        url = url[:-4]
    return url

def git_info(cwd):
    """Branch (or short hash), dirty flag and browsable origin URL for cwd."""
    br = _run(["git", "branch", "--show-current"], cwd, GIT_TIMEOUT)
    if not br:
        br = _run(["git", "rev-parse", "--short", "HEAD"], cwd, GIT_TIMEOUT)[:7]
    if not br:
        return {"branch": "", "dirty": False, "remote": ""}

    dirty = bool(_run(["git", "status", "--porcelain"], cwd, GIT_TIMEOUT))
    remote = normalize_remote(_run(["git", "remote", "get-url", "origin"], cwd, GIT_TIMEOUT))
    return {"branch": br, "dirty": dirty, "remote": remote}

# ═══════════════════════ CREDENTIALS ═══════════════════════

def _extract_token(raw):
    """Pull claudeAiOauth.accessToken out of a JSON credential blob."""
    if not raw:
        return None
    try:
        creds = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(creds, dict):
        return None
    oauth = creds.get("claudeAiOauth")
    if not isinstance(oauth, dict):
        return None
    tok = oauth.get("accessToken")
    return tok if isinstance(tok, str) and tok else None

def _env_token():
    return os.environ.get(TOKEN_ENV) or None

def _keychain_token():
    """macOS Keychain generic password."""
    raw = _run(["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"], timeout=3)
    return _extract_token(raw)

def _secret_tool_token():
    """libsecret / GNOME Keyring via secret-tool."""
    if not shutil.which("secret-tool"):
        return None
    raw = _run(["secret-tool", "lookup", "service", KEYCHAIN_SERVICE], timeout=3)
    return _extract_token(raw)

def _wincred_token():
    """Windows Credential Manager, generic credentials read with CredReadW."""
    try:
        import ctypes
        from ctypes import wintypes

        class CREDENTIAL(ctypes.Structure):
            _fields_ = [
                ("Flags", wintypes.DWORD),
                ("Type", wintypes.DWORD),
                ("TargetName", wintypes.LPWSTR),
                ("Comment", wintypes.LPWSTR),
                ("LastWritten", wintypes.FILETIME),
                ("CredentialBlobSize", wintypes.DWORD),
                ("CredentialBlob", ctypes.POINTER(ctypes.c_ubyte)),
                ("Persist", wintypes.DWORD),
                ("AttributeCount", wintypes.DWORD),
                ("Attributes", ctypes.c_void_p),
                ("TargetAlias", wintypes.LPWSTR),
                ("UserName", wintypes.LPWSTR),
            ]

        advapi32 = ctypes.WinDLL("advapi32", use_last_error=True)
        cred_read = advapi32.CredReadW
        cred_read.argtypes = [wintypes.LPCWSTR, wintypes.DWORD, wintypes.DWORD,
                              ctypes.POINTER(ctypes.POINTER(CREDENTIAL))]
        cred_read.restype = wintypes.BOOL
        cred_free = advapi32.CredFree
        cred_free.argtypes = [ctypes.c_void_p]

        for target in WIN_CRED_TARGETS:
            ptr = ctypes.POINTER(CREDENTIAL)()
            if not cred_read(target, 1, 0, ctypes.byref(ptr)):  # 1 = CRED_TYPE_GENERIC
                continue
            try:
                c = ptr.contents
                blob = ctypes.string_at(c.CredentialBlob, c.CredentialBlobSize) if c.CredentialBlobSize else b""
            finally:
                cred_free(ptr)
            for enc in ("utf-16-le", "utf-8"):
                try:
                    tok = _extract_token(blob.decode(enc))
                except UnicodeDecodeError:
                    continue
                if tok:
                    return tok
    except (OSError, AttributeError, ValueError):
        log.debug("credential manager lookup failed", exc_info=True)
    return None

def credential_paths():
    """Credential files in lookup order; Windows adds app-data locations."""
    paths = [CREDS_FILE]
    if IS_WIN:
        appdata = os.environ.get("APPDATA", "")
        localappdata = os.environ.get("LOCALAPPDATA", "")
        if appdata:
            paths.append(Path(appdata) / "Claude" / ".credentials.json")
            paths.append(Path(appdata) / "claude-code" / ".credentials.json")
        if localappdata:
            paths.append(Path(localappdata) / "Claude" / ".credentials.json")
    return paths

def _file_token(paths=None):
    for p in credential_paths() if paths is None else paths:
        try:
            tok = _extract_token(Path(p).read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            continue
        if tok:
            return tok
    return None

def credential_sources(platform=None):
    """Token sources for this platform, highest priority first."""
    platform = platform or sys.platform
    sources = [_env_token]
    if platform == "darwin":
        sources.append(_keychain_token)
    elif platform == "win32":
        sources.append(_wincred_token)
    elif platform.startswith("linux"):
        sources.append(_secret_tool_token)
    sources.append(_file_token)
    return sources

def get_oauth_token(sources=None):
    """First token any source yields, or None. Sources swallow their own failures."""
    for source in credential_sources() if sources is None else sources:
        tok = source()
        if tok:
            log.debug("token from %s", getattr(source, "__name__", source))
            return tok
    log.debug("no OAuth token found")
    return None

# ═══════════════════════ CACHE ═══════════════════════

def load_cache(path=None):
    """Last usage snapshot; {} when missing, empty or corrupt."""
    path = Path(path or CACHE_FILE)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, ValueError):
        log.debug("unreadable cache %s", path, exc_info=True)
        return {}
    return data if isinstance(data, dict) else {}

def save_cache(snapshot, path=None):
    """Atomically replace the cache file (tmp + rename)."""
    path = Path(path or CACHE_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".statusline_", suffix=".tmp")
    try:
        with open(fd, "w", encoding="utf-8") as f:
            json.dump(snapshot, f)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise

# ═══════════════════════ REFRESH ═══════════════════════

def trigger_refresh(token=None):
    """Spawn a detached --fetch-only child if a token exists. Never waits on it."""
    token = token or get_oauth_token()
    if not token:
        return False

    env = dict(os.environ)
    env[TOKEN_ENV] = token  # child picks it up as the first source
    kwargs = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
        "env": env,
    }
    if IS_WIN:
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True

    try:
        subprocess.Popen([sys.executable, str(SCRIPT_PATH), FETCH_FLAG], **kwargs)
    except OSError:
        log.debug("could not spawn refresh child", exc_info=True)
        return False
    return True

def fetch_usage(token, path=None):
    """GET the usage endpoint once and overwrite the cache. False leaves the cache alone."""
    try:
        r = subprocess.run([
            "curl", "-sf", "--max-time", str(FETCH_TIMEOUT),
            "-H", "@-",  # Authorization header from stdin, kept out of argv
            "-H", "anthropic-beta: oauth-2025-04-20",
            "-H", "anthropic-version: 2023-06-01",
            USAGE_URL,
        ], input=f"Authorization: Bearer {token}\n", capture_output=True, text=True,
            timeout=FETCH_TIMEOUT + 2)
    except (OSError, ValueError, subprocess.SubprocessError):
        log.debug("usage request failed", exc_info=True)
        return False
    if r.returncode != 0 or not r.stdout.strip():
        log.debug("usage request failed: curl exit %d", r.returncode)
        return False

    try:
        data = json.loads(r.stdout)
    except ValueError:
        log.debug("usage response is not JSON")
        return False
    if not isinstance(data, dict):
        return False

    snapshot = {"cached_at": datetime.now(timezone.utc).isoformat()}
    for _, key in USAGE_WINDOWS:
        if data.get(key):
            snapshot[key] = data[key]
    try:
        save_cache(snapshot, path)
    except OSError:
        log.debug("could not write cache", exc_info=True)
        return False
    log.debug("cache refreshed: %s", ", ".join(k for k in snapshot if k != "cached_at") or "no windows")
    return True

def fetch_only():
    """--fetch-only mode: 1 without a token, else 0 whatever the request did."""
    token = get_oauth_token()
    if not token:
        return 1
    fetch_usage(token)
    return 0

# ═══════════════════════ RENDER ═══════════════════════

def model_name(model):
    if not isinstance(model, dict):
        model = {}
    name = str(model.get("display_name") or model.get("id") or "?")
    if name.startswith("Claude "):
        name = name[len("Claude "):]
    return name

def usage_segment(label, period, now=None):
    util = period.get("utilization") if isinstance(period, dict) else None
    if not isinstance(util, (int, float)) or isinstance(util, bool):
        return f"{DM}{label} {TX}--{R}"
    txt = f"{DM}{label} {pcolor(util)}{int(util + 0.5)}%"
    left = fmt_reset(period.get("resets_at"), now)
    if left:
        txt += f" {DM}{left}"
    return txt + R

def render(data, cache, git, now=None):
    """Build the statusline from session data, cached usage and git info."""
    parts = [f"{TX}{model_name(data.get('model'))}{R}"]

    # Git branch
    if git.get("branch"):
        bd = f"{git['branch']}*" if git.get("dirty") else git["branch"]
        bc = DT if git.get("dirty") else BR
        parts.append(f"{bc}{osc8(git['remote'], bd) if git.get('remote') else bd}{R}")

    # Context: 24k/200k
    ctx = data.get("context_window") or {}
    cs = ctx.get("context_window_size") or 200_000
    cp = ctx.get("used_percentage") or 0
    parts.append(f"{pcolor(cp)}{fmt_tok(cs * cp // 100)}{DM}/{fmt_tok(cs)}{R}")

    # 5h / 7d usage with reset countdown
    for label, key in USAGE_WINDOWS:
        parts.append(usage_segment(label, cache.get(key) or {}, now))

    line = f" {DM}|{R} ".join(parts)
    # Reset overrides the host's dim styling; NBSP stops it trimming spaces
    return "\033[0m" + line.replace(" ", "\u00a0")

def session_cwd(data):
    """workspace.current_dir, or the process cwd when missing or malformed."""
    workspace = data.get("workspace")
    cwd = workspace.get("current_dir") if isinstance(workspace, dict) else None
    return cwd if isinstance(cwd, str) and cwd else os.getcwd()

def read_session(stream):
    """Session JSON from stdin, or None when empty/invalid. Always decoded as UTF-8."""
    try:
        buf = getattr(stream, "buffer", None)
        if buf is not None:
            raw = buf.read().decode("utf-8-sig", errors="replace").strip()
        else:
            raw = stream.read().strip()
    except (OSError, ValueError, AttributeError):
        return None
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None

# ═══════════════════════ BOOTSTRAP ═══════════════════════

def statusline_command():
    if shutil.which(CONSOLE_SCRIPT):
        return CONSOLE_SCRIPT
    return f'"{sys.executable}" "{SCRIPT_PATH}"'

def bootstrap(settings_path=None):
    """Install this script as the statusLine command in Claude Code settings."""
    settings_path = Path(settings_path or SETTINGS_FILE)
    settings = {}
    if settings_path.exists():
        try:
            settings = json.loads(settings_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            settings = None
        if not isinstance(settings, dict):
            print(f"✗ Could not parse {settings_path}; fix it and run again.")
            return 1

    cmd = statusline_command()
    current = settings.get("statusLine")
    if isinstance(current, dict) and current.get("command") == cmd:
        print("✓ Already configured as Claude Code statusline.")
        return 0

    settings["statusLine"] = {"type": "command", "command": cmd}
    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
    print("✓ Claude Code statusline configured!")
    print("  Restart Claude Code to apply.")
    return 0

# ═══════════════════════ MAIN ═══════════════════════

def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    setup_logging()

    if FETCH_FLAG in argv:
        return fetch_only()

    if IS_WIN:
        try:
            sys.stdout.reconfigure(encoding="utf-8")
        except (AttributeError, ValueError):
            pass

    if sys.stdin is not None and sys.stdin.isatty():
        return bootstrap()

    data = read_session(sys.stdin) if sys.stdin is not None else None
    # Cache first, then kick the refresh: this run shows the previous snapshot
    cache = load_cache()
    trigger_refresh()

    if data is None:
        print(NO_DATA)
        return 0

    try:
        line = render(data, cache, git_info(session_cwd(data)))
    except Exception:
        log.debug("render failed", exc_info=True)
        line = model_name(data.get("model"))

    print(line)
    return 0

if __name__ == "__main__":
    sys.exit(main())

# permissions.py
# Tiered permission classification for shell commands, scripts and plugin
# permission declarations.
#
#   Tier 1  read-only, always autonomous
#   Tier 2  side effects in a known category, approved once per session
#   Tier 3  destructive or sensitive, confirmed every single time
#
# Order of evaluation for shell commands (first hit wins):
#   sensitive path -> destructive command -> dangerous regex
#   -> tier 2 category -> tier 1 allowlist -> inconclusive
#
# "Inconclusive" is returned as Tier 2 / uncategorized with conclusive=False;
# the safety gate decides whether to spend an LLM call on it.

import os
import re
from enum import Enum

from pydantic import BaseModel, ConfigDict

from deskpilot.models import RiskTier


class Category(str, Enum):
    FILE_WRITES = "file_writes"
    NETWORK_ACCESS = "network_access"
    PACKAGE_INSTALLS = "package_installs"
    GIT_WRITES = "git_writes"
    APP_STATE_CHANGES = "app_state_changes"
    PROCESS_MANAGEMENT = "process_management"
    UNCATEGORIZED = "uncategorized"

    @property
    def approval_prompt(self) -> str:
        return _APPROVAL_PROMPTS[self]


_APPROVAL_PROMPTS = {
    Category.FILE_WRITES: "The agent wants to create or modify files",
    Category.NETWORK_ACCESS: "The agent wants to access the network",
    Category.PACKAGE_INSTALLS: "The agent wants to install or remove packages",
    Category.GIT_WRITES: "The agent wants to modify git repositories",
    Category.APP_STATE_CHANGES: "The agent wants to control applications",
    Category.PROCESS_MANAGEMENT: "The agent wants to manage running processes",
    Category.UNCATEGORIZED: "The agent wants to run an unrecognized command",
}


class Classification(BaseModel):
    model_config = ConfigDict(frozen=True)

    tier: RiskTier
    reason: str
    category: Category | None = None
    conclusive: bool = True


def _tier1(reason: str) -> Classification:
    return Classification(tier=RiskTier.TIER1_AUTO, reason=reason)


def _tier2(category: Category, conclusive: bool = True) -> Classification:
    return Classification(
        tier=RiskTier.TIER2_SESSION,
        reason=category.approval_prompt,
        category=category,
        conclusive=conclusive,
    )


def _tier3(reason: str) -> Classification:
    return Classification(tier=RiskTier.TIER3_ALWAYS, reason=reason)


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

SENSITIVE_PATHS = (
    "~/.ssh/", "~/.gnupg/", "~/.aws/", "~/.kube/",
    "~/library/keychains/", "~/library/launchagents/",
    "/etc/", "/system/", "/usr/local/bin/", "/boot/",
    "/library/launchdaemons/", "/library/launchagents/",
)

TIER3_COMMANDS = (
    "rm ", "rm\t", "rmdir ", "unlink ", "shred ",
    "sudo ", "su ", "doas ",
    "shutdown", "reboot", "halt", "poweroff",
    "mkfs", "diskutil erase", "diskutil partitiondisk", "dd ", "fdisk",
    "chmod -r", "chown -r",
    "kill -9", "kill -kill",
    "launchctl load", "launchctl unload", "launchctl bootstrap",
    "systemctl ", "crontab ",
    "defaults write", "security ",
    "csrutil", "spctl", "codesign", "systemsetup", "networksetup",
)

TIER3_PATTERNS: tuple[tuple[re.Pattern, str], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), description)
    for pattern, description in (
        (r"\|\s*base64\s+(-d|--decode)\s*\|\s*(bash|sh|zsh|eval)", "Base64-encoded execution"),
        (r"\|\s*(bash|sh|zsh|eval)\s*$", "Pipe to shell"),
        (r"\$\(.*\).*>", "Command substitution in redirect"),
        (r"curl\s+.*\|\s*(bash|sh|eval)", "Remote code execution"),
        (r"wget\s+.*\|\s*(bash|sh|eval)", "Remote code execution"),
        (r"python[23]?\s+-c\s+.*(os\.|subprocess|shutil\.rmtree|eval|exec)", "Python arbitrary execution"),
        (r"perl\s+-e\s+.*(system|exec|unlink)", "Perl arbitrary execution"),
        (r"ruby\s+-e\s+.*(system|exec|FileUtils\.rm)", "Ruby arbitrary execution"),
        (r":\(\)\s*\{\s*:\|:&\s*\};:", "Fork bomb"),
    )
)

TIER2_CATEGORIES: tuple[tuple[tuple[str, ...], Category], ...] = (
    (("cp ", "mv ", "mkdir ", "touch ", "tee ", "rsync ", "ln "), Category.FILE_WRITES),
    (
        ("curl ", "wget ", "http ", "ssh ", "scp ", "sftp ", "ftp ", "nc ", "nmap ", "ping "),
        Category.NETWORK_ACCESS,
    ),
    (
        ("brew install", "brew uninstall", "brew remove",
         "npm install", "npm uninstall", "npm i ",
         "pip install", "pip uninstall", "pip3 install", "pip3 uninstall",
         "gem install", "gem uninstall", "cargo install", "cargo uninstall",
         "apt install", "apt remove", "apt-get install", "apt-get remove",
         "port install", "port uninstall"),
        Category.PACKAGE_INSTALLS,
    ),
    (
        ("git add", "git commit", "git push", "git merge", "git rebase",
         "git checkout", "git reset", "git stash", "git cherry-pick"),
        Category.GIT_WRITES,
    ),
    (("kill ", "killall ", "pkill "), Category.PROCESS_MANAGEMENT),
)

TIER1_COMMANDS = (
    "ls", "cat", "head", "tail", "less", "wc", "file", "stat", "du", "df",
    "pwd", "cd", "echo", "date", "whoami", "uname", "which", "where", "type",
    "find", "locate", "mdfind", "grep", "rg", "ag", "ack",
    "ps", "top", "uptime", "sw_vers", "system_profiler",
    "git status", "git log", "git diff", "git branch", "git show", "git remote",
    "open ", "defaults read", "plutil", "mdls", "xattr", "otool", "man", "help",
)

SCRIPT_TIER3_VERBS = ("delete", "empty trash", "format", "erase")
SCRIPT_WRITE_VERBS = ("set", "make", "move", "duplicate", "activate", "save", "close")
SCRIPT_READ_VERBS = ("get", "count", "exists", "name of", "properties of", "bounds of")

_SEPARATORS = (" ", ";", "&&", "|")
_DO_SHELL_SCRIPT = re.compile(r'do\s+shell\s+script\s+"([^"]+)"', re.IGNORECASE)


def _contains_command(command: str, prefix: str) -> bool:
    """True when `prefix` starts the command or follows a shell separator."""
    if command.startswith(prefix):
        return True
    return any(sep + prefix in command for sep in _SEPARATORS)


# ---------------------------------------------------------------------------
# Shell commands
# ---------------------------------------------------------------------------


def _matches_sensitive_path(command: str) -> bool:
    home = os.path.expanduser("~").lower()
    expanded = command.replace("~", home)
    return any(path.replace("~", home) in expanded for path in SENSITIVE_PATHS)


def _matches_tier1(command: str) -> bool:
    for allowed in TIER1_COMMANDS:
        if not command.startswith(allowed):
            continue
        # Word boundary: "cat" must not match "catalog"
        rest = command[len(allowed):]
        if rest and not allowed.endswith(" ") and not rest[0].isspace():
            continue
        if allowed == "find" and ("-exec" in command or "-delete" in command):
            return False
        return True
    return command.endswith("--help") or command.endswith("--version")


def classify_command(command: str) -> Classification:
    """Classify one shell command line into a permission tier."""
    trimmed = command.strip()
    lower = trimmed.lower()

    if _matches_sensitive_path(lower):
        return _tier3("Targets a sensitive path")

    for pattern in TIER3_COMMANDS:
        if _contains_command(lower, pattern):
            return _tier3("Destructive or dangerous command")

    for regex, description in TIER3_PATTERNS:
        if regex.search(trimmed):
            return _tier3(f"Potentially dangerous pattern: {description}")

    if ">" in lower:
        return _tier2(Category.FILE_WRITES)

    for prefixes, category in TIER2_CATEGORIES:
        if any(_contains_command(lower, prefix) for prefix in prefixes):
            return _tier2(category)

    # Chained commands only get tier 1 when every segment is read-only.
    segments = [s.strip() for s in re.split(r"&&|\|\||;|\|", lower) if s.strip()]
    if segments and all(_matches_tier1(segment) for segment in segments):
        return _tier1("Read-only command")

    return _tier2(Category.UNCATEGORIZED, conclusive=False)


# ---------------------------------------------------------------------------
# Scripts
# ---------------------------------------------------------------------------


def classify_script(script: str) -> Classification:
    """Classify an AppleScript-style automation script."""
    lower = script.lower()

    inner = _DO_SHELL_SCRIPT.search(script)
    if inner:
        inner_tier = classify_command(inner.group(1))
        if inner_tier.tier is RiskTier.TIER1_AUTO:
            return _tier2(Category.APP_STATE_CHANGES)
        return inner_tier

    for verb in SCRIPT_TIER3_VERBS:
        if verb in lower:
            return _tier3(f"Destructive script verb: {verb}")

    if "system preferences" in lower or "system settings" in lower:
        return _tier3("Modifies system configuration")

    if 'tell application "terminal"' in lower and "do script" in lower:
        return _tier3("Arbitrary Terminal execution via script")

    if any(re.search(rf"\b{re.escape(verb)}\b", lower) for verb in SCRIPT_WRITE_VERBS):
        return _tier2(Category.APP_STATE_CHANGES)

    if any(verb in lower for verb in SCRIPT_READ_VERBS):
        return _tier1("Read-only script")

    return _tier2(Category.APP_STATE_CHANGES)


# ---------------------------------------------------------------------------
# Plugin permissions
# ---------------------------------------------------------------------------

PLUGIN_PERMISSION_TIERS: dict[str, Classification] = {
    "read": _tier1("Read-only plugin"),
    "screen": _tier1("Reads the screen"),
    "clipboard.read": _tier1("Reads the clipboard"),
    "filesystem.read": _tier1("Reads files"),
    "filesystem.write": _tier2(Category.FILE_WRITES),
    "filesystem": _tier2(Category.FILE_WRITES),
    "network": _tier2(Category.NETWORK_ACCESS),
    "apps": _tier2(Category.APP_STATE_CHANGES),
    "input": _tier2(Category.APP_STATE_CHANGES),
    "process": _tier2(Category.PROCESS_MANAGEMENT),
    "shell": _tier3("Plugin executes shell commands"),
    "system": _tier3("Plugin modifies system configuration"),
    "credentials": _tier3("Plugin accesses credentials"),
}


def classify_plugin_permissions(permissions: list[str]) -> Classification:
    """Highest tier implied by a plugin's declared permission strings.

    Unrecognized strings count as Tier 2 / uncategorized. A plugin that
    declares nothing is treated as read-only.
    """
    if not permissions:
        return _tier1("Plugin declares no permissions")

    worst: Classification | None = None
    for permission in permissions:
        mapped = PLUGIN_PERMISSION_TIERS.get(permission.strip().lower())
        if mapped is None:
            mapped = _tier2(Category.UNCATEGORIZED)
        if worst is None or mapped.tier > worst.tier:
            worst = mapped
    return worst

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Optional

from .policy import bare_name


@dataclass(frozen=True)
class InstallHint:
    brew_cmd: str
    apt_cmd: str
    choco_cmd: str
    docs_url: str


def _hint(brew: str, apt: str, choco: str, docs: str) -> InstallHint:
    return InstallHint(
        brew_cmd=f"brew install {brew}",
        apt_cmd=f"sudo apt install {apt}",
        choco_cmd=f"choco install {choco}",
        docs_url=docs,
    )


# Keyed by the executable name an adapter spawns.
_HINTS: Dict[str, InstallHint] = {
    "rg": _hint("ripgrep", "ripgrep", "ripgrep", "https://github.com/BurntSushi/ripgrep#installation"),
    "fd": _hint("fd", "fd-find", "fd", "https://github.com/sharkdp/fd#installation"),
    "jq": _hint("jq", "jq", "jq", "https://jqlang.github.io/jq/download/"),
    "git": _hint("git", "git", "git", "https://git-scm.com/downloads"),
    "gh": _hint("gh", "gh", "gh", "https://cli.github.com/"),
    "curl": _hint("curl", "curl", "curl", "https://curl.se/download.html"),
    "kubectl": _hint("kubectl", "kubectl", "kubernetes-cli", "https://kubernetes.io/docs/tasks/tools/"),
    "helm": _hint("helm", "helm", "kubernetes-helm", "https://helm.sh/docs/intro/install/"),
    "docker": _hint("--cask docker", "docker.io", "docker-desktop", "https://docs.docker.com/get-docker/"),
    "psql": _hint("libpq", "postgresql-client", "postgresql", "https://www.postgresql.org/download/"),
    "mysql": _hint("mysql-client", "mysql-client", "mysql", "https://dev.mysql.com/downloads/"),
    "redis-cli": _hint("redis", "redis-tools", "redis-64", "https://redis.io/docs/latest/operate/oss_and_stack/install/"),
    "mongosh": _hint("mongosh", "mongodb-mongosh", "mongodb-shell", "https://www.mongodb.com/docs/mongodb-shell/install/"),
    "make": _hint("make", "make", "make", "https://www.gnu.org/software/make/"),
    "cmake": _hint("cmake", "cmake", "cmake", "https://cmake.org/download/"),
    "go": _hint("go", "golang-go", "golang", "https://go.dev/doc/install"),
    "cargo": _hint("rust", "cargo", "rust", "https://www.rust-lang.org/tools/install"),
    "node": _hint("node", "nodejs", "nodejs", "https://nodejs.org/en/download"),
    "npm": _hint("node", "npm", "nodejs", "https://docs.npmjs.com/downloading-and-installing-node-js-and-npm"),
    "python3": _hint("python", "python3", "python", "https://www.python.org/downloads/"),
    "mvn": _hint("maven", "maven", "maven", "https://maven.apache.org/install.html"),
    "gradle": _hint("gradle", "gradle", "gradle", "https://gradle.org/install/"),
    "dotnet": _hint("--cask dotnet-sdk", "dotnet-sdk-8.0", "dotnet-sdk", "https://dotnet.microsoft.com/download"),
    "ruby": _hint("ruby", "ruby-full", "ruby", "https://www.ruby-lang.org/en/documentation/installation/"),
    "terraform": _hint("terraform", "terraform", "terraform", "https://developer.hashicorp.com/terraform/install"),
    "shellcheck": _hint("shellcheck", "shellcheck", "shellcheck", "https://github.com/koalaman/shellcheck#installing"),
    "trivy": _hint("trivy", "trivy", "trivy", "https://trivy.dev/latest/getting-started/installation/"),
    "gitleaks": _hint("gitleaks", "gitleaks", "gitleaks", "https://github.com/gitleaks/gitleaks#installing"),
}

INSTALL_MARKER = "Install it with:"

GENERIC_NOT_FOUND = 'Command not found: "{tool}". Ensure it is installed and available in your PATH.'

_NOT_FOUND_RE = re.compile(r'^Command not found: "(?P<tool>[^"]+)"')


def get_install_hint(tool: str) -> Optional[InstallHint]:
    return _HINTS.get(bare_name(tool))


def not_found_message(tool: str) -> str:
    return GENERIC_NOT_FOUND.format(tool=tool)


def format_install_hint(tool: str, hint: InstallHint) -> str:
    return "\n".join(
        [
            f'Command not found: "{tool}". {INSTALL_MARKER}',
            f"  macOS:   {hint.brew_cmd}",
            f"  Debian:  {hint.apt_cmd}",
            f"  Windows: {hint.choco_cmd}",
            f"Docs: {hint.docs_url}",
        ]
    )


def enrich_not_found(message: str) -> str:
    """Swap the generic not-found text for tool-specific install steps.

    The tool name is read back out of the message. Anything that is not a
    not-found message, or names a tool without a hint, is returned as-is.
    """

    m = _NOT_FOUND_RE.match(message)
    if not m:
        return message
    tool = m.group("tool")
    hint = get_install_hint(tool)
    if hint is None:
        return message
    return format_install_hint(tool, hint)


def known_tools() -> list[str]:
    return sorted(_HINTS)

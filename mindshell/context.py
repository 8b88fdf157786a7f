"""Project and system context used to build prompts.

Static facts (system identity, installed tools, project type) are expensive
to gather and are cached per project under ``.mindshell/``. Dynamic facts
(location, git state, top-level files) are recomputed on every call.
"""

from __future__ import annotations

import getpass
import hashlib
import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import psutil
from jsonschema import Draft7Validator
from jsonschema.exceptions import best_match

from .config import METADATA_DIR_NAME
from .errors import CacheError

CACHE_VERSION = "1.0.0"
CACHE_TTL = 24 * 60 * 60
GIT_TIMEOUT = 2

# Only files that change project detection take part in the hash.
KEY_FILES = [
    "package.json", "tsconfig.json", "go.mod", "Cargo.toml",
    "requirements.txt", "pyproject.toml", "pom.xml", "build.gradle",
    "composer.json", "pubspec.yaml", "Gemfile", "mix.exs",
]

TOOL_CHECKS: Dict[str, List[str]] = {
    "packageManagers": ["npm", "yarn", "pnpm", "bun", "pip", "pip3", "poetry", "uv"],
    "languages": ["node", "python", "python3", "go", "rustc", "java", "php", "ruby", "deno"],
    "devTools": ["git", "docker", "kubectl", "terraform", "ansible", "helm"],
    "databases": ["mysql", "psql", "mongo", "redis-cli"],
}

LOCK_FILES = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("bun.lockb", "bun"),
    ("poetry.lock", "poetry"),
    ("uv.lock", "uv"),
    ("Pipfile.lock", "pipenv"),
]

DETECTION_RULES: List[Dict[str, Any]] = [
    {"files": ["package.json"], "lang": "JavaScript", "package_json": True},
    {"files": ["next.config.js", "next.config.mjs", "next.config.ts"], "lang": "TypeScript", "framework": "Next.js"},
    {"files": ["tsconfig.json"], "lang": "TypeScript"},
    {"files": ["angular.json"], "framework": "Angular"},
    {"files": ["nuxt.config.js", "nuxt.config.ts"], "framework": "Nuxt"},
    {"files": ["gatsby-config.js"], "framework": "Gatsby"},
    {"files": ["remix.config.js"], "framework": "Remix"},
    {"files": ["vite.config.js", "vite.config.ts"], "build_tool": "Vite"},
    {"files": ["webpack.config.js"], "build_tool": "Webpack"},
    {"files": ["rollup.config.js"], "build_tool": "Rollup"},
    {"files": ["esbuild.config.js"], "build_tool": "ESBuild"},
    {"files": ["go.mod", "main.go"], "lang": "Go"},
    {"files": ["Cargo.toml", "src/main.rs"], "lang": "Rust"},
    {"files": ["requirements.txt", "pyproject.toml", "setup.py", "main.py", "app.py"], "lang": "Python"},
    {"files": ["manage.py"], "lang": "Python", "framework": "Django"},
    {"files": ["Pipfile"], "lang": "Python", "framework": "Pipenv"},
    {"files": ["poetry.lock"], "lang": "Python", "framework": "Poetry"},
    {"files": ["pom.xml"], "lang": "Java", "build_tool": "Maven"},
    {"files": ["build.gradle", "build.gradle.kts"], "lang": "Java/Kotlin", "build_tool": "Gradle"},
    {"files": ["composer.json"], "lang": "PHP"},
    {"files": ["pubspec.yaml"], "lang": "Dart", "framework": "Flutter"},
    {"files": ["Gemfile"], "lang": "Ruby"},
    {"files": ["mix.exs"], "lang": "Elixir"},
    {"files": ["deno.json"], "lang": "TypeScript", "framework": "Deno"},
    {"files": ["bun.config.js"], "lang": "TypeScript", "framework": "Bun"},
]

PACKAGE_JSON_FRAMEWORKS = [
    ("next", "Next.js"),
    ("react", "React"),
    ("vue", "Vue"),
    ("svelte", "Svelte"),
    ("express", "Express"),
    ("@nestjs/core", "NestJS"),
    ("@angular/core", "Angular"),
    ("fastify", "Fastify"),
]

TEST_CONFIG_FILES = {
    "jest.config.js", "jest.config.ts", "vitest.config.js", "vitest.config.ts",
    "cypress.json", "cypress.config.js", "playwright.config.js", "playwright.config.ts",
    "pytest.ini", "tox.ini", "conftest.py",
}

CI_MARKERS = {".github", ".gitlab-ci.yml", ".travis.yml", "jenkins", "Jenkinsfile", ".circleci", "azure-pipelines.yml"}
DOCKER_MARKERS = {"Dockerfile", "docker-compose.yml", "docker-compose.yaml"}

IMPORTANT_PATTERNS = [
    "readme", "license", "changelog", ".env", ".gitignore",
    "dockerfile", "docker-compose", "makefile", "justfile", "taskfile",
]

_STRING_LIST: Dict[str, Any] = {"type": "array", "items": {"type": "string"}}

# Shape of the fields the formatters index directly.
CACHE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["version", "timestamp", "projectHash", "staticc"],
    "properties": {
        "version": {"type": "string"},
        "timestamp": {"type": "number"},
        "projectHash": {"type": "string"},
        "staticc": {
            "type": "object",
            "required": ["system", "tools", "project"],
            "properties": {
                "system": {
                    "type": "object",
                    "required": ["os", "arch", "shell"],
                    "properties": {
                        "os": {"type": "string"},
                        "arch": {"type": "string"},
                        "shell": {"type": "string"},
                    },
                },
                "tools": {"type": "object", "additionalProperties": _STRING_LIST},
                "project": {
                    "type": "object",
                    "required": ["languages", "frameworks", "packageManager"],
                    "properties": {
                        "languages": _STRING_LIST,
                        "frameworks": _STRING_LIST,
                        "packageManager": {"type": ["string", "null"]},
                    },
                },
            },
        },
    },
}

_cache_validator = Draft7Validator(CACHE_SCHEMA)

ToolProbe = Callable[[str], bool]

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Hashing and cache location
# ----------------------------------------------------------------------
def project_hash(project_path: Path) -> str:
    """md5 over the key manifest files plus the sorted top-level listing."""
    digest = hashlib.md5()
    try:
        for name in KEY_FILES:
            candidate = project_path / name
            if candidate.is_file():
                content = candidate.read_text(encoding="utf-8", errors="replace")
                digest.update(f"{name}:{content}".encode("utf-8"))
        items = sorted(item.name for item in project_path.iterdir() if item.name != METADATA_DIR_NAME)
        digest.update(",".join(items).encode("utf-8"))
    except OSError:
        # An unhashable project never matches a stored entry.
        digest.update(str(time.time()).encode("utf-8"))
    return digest.hexdigest()


def cache_file_path(project_path: Path) -> Path:
    path_hash = hashlib.md5(str(project_path).encode("utf-8")).hexdigest()[:8]
    return project_path / METADATA_DIR_NAME / f"context-{project_path.name}-{path_hash}.json"


# ----------------------------------------------------------------------
# Static detection
# ----------------------------------------------------------------------
def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.getenv("USER") or os.getenv("USERNAME") or "unknown"


def detect_system() -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "os": sys.platform,
        "arch": platform.machine(),
        "release": platform.release(),
        "shell": os.getenv("SHELL") or os.getenv("COMSPEC") or "unknown",
        "user": _current_user(),
        "python": platform.python_version(),
        "cwd": os.getcwd(),
        "cpuCount": psutil.cpu_count(logical=True) or 1,
        "memoryTotal": memory.total,
    }


def _which(name: str) -> bool:
    return shutil.which(name) is not None


def detect_tools(probe: Optional[ToolProbe] = None) -> Dict[str, List[str]]:
    probe = probe or _which
    return {
        category: [name for name in names if probe(name)]
        for category, names in TOOL_CHECKS.items()
    }


def _read_package_json(project_path: Path) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads((project_path / "package.json").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _apply_package_json(project: Dict[str, Any], pkg: Dict[str, Any]) -> None:
    deps: Dict[str, Any] = {}
    for section in ("dependencies", "devDependencies"):
        if isinstance(pkg.get(section), dict):
            deps.update(pkg[section])
    if "typescript" in deps and "TypeScript" not in project["languages"]:
        project["languages"].append("TypeScript")
    for dependency, framework in PACKAGE_JSON_FRAMEWORKS:
        if dependency in deps and framework not in project["frameworks"]:
            project["frameworks"].append(framework)


def detect_project(project_path: Path) -> Dict[str, Any]:
    project: Dict[str, Any] = {
        "type": "unknown",
        "languages": [],
        "frameworks": [],
        "packageManager": None,
        "buildTool": None,
        "hasTests": False,
        "hasDocker": False,
        "hasCI": False,
    }
    try:
        names = [item.name for item in project_path.iterdir()]
    except OSError as exc:
        project["error"] = str(exc)
        return project
    present = set(names)

    for lock_file, manager in LOCK_FILES:
        if lock_file in present:
            project["packageManager"] = manager
            break

    for rule in DETECTION_RULES:
        if not any(name in present or (project_path / name).is_file() for name in rule["files"]):
            continue
        lang = rule.get("lang")
        if lang and lang not in project["languages"]:
            project["languages"].append(lang)
        framework = rule.get("framework")
        if framework and framework not in project["frameworks"]:
            project["frameworks"].append(framework)
        if rule.get("build_tool"):
            project["buildTool"] = rule["build_tool"]
        if rule.get("package_json"):
            pkg = _read_package_json(project_path)
            if pkg:
                _apply_package_json(project, pkg)

    project["hasDocker"] = bool(present & DOCKER_MARKERS)
    project["hasCI"] = bool(present & CI_MARKERS)
    project["hasTests"] = any(
        "test" in name or "spec" in name or name in TEST_CONFIG_FILES for name in names
    )

    languages = project["languages"]
    if project["frameworks"]:
        project["type"] = "web-application"
    elif "Go" in languages or "Rust" in languages:
        project["type"] = "system-application"
    elif "Python" in languages:
        project["type"] = "script/application"
    elif "package.json" in present:
        pkg = _read_package_json(project_path) or {}
        project["type"] = "library/cli" if pkg.get("main") or pkg.get("bin") else "application"
    return project


# ----------------------------------------------------------------------
# Dynamic detection
# ----------------------------------------------------------------------
def _git(project_path: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["git", *args],
        cwd=project_path,
        capture_output=True,
        text=True,
        timeout=GIT_TIMEOUT,
        check=False,
    )


def git_info(project_path: Path) -> Dict[str, Any]:
    info: Dict[str, Any] = {"isRepo": False}
    try:
        if _git(project_path, "rev-parse", "--is-inside-work-tree").returncode != 0:
            return info
        info["isRepo"] = True
        info["branch"] = _git(project_path, "branch", "--show-current").stdout.strip()
        info["hasChanges"] = _git(project_path, "diff", "--quiet").returncode != 0
        untracked = _git(project_path, "ls-files", "--others", "--exclude-standard").stdout.strip()
        info["hasUntracked"] = bool(untracked)
        last = _git(project_path, "log", "-1", "--pretty=format:%h %s")
        if last.returncode == 0 and last.stdout.strip():
            info["lastCommit"] = last.stdout.strip()
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("git lookup failed in %s: %s", project_path, exc)
    return info


def location_info(project_path: Path) -> Dict[str, Any]:
    location: Dict[str, Any] = {
        "path": str(project_path),
        "name": project_path.name,
        "parent": project_path.parent.name,
        "depth": len(project_path.parts) - 1,
    }
    lowered = str(project_path).lower()
    if any(marker in lowered for marker in ("projects", "workspace", "dev")):
        location["context"] = "development"
    elif "desktop" in lowered:
        location["context"] = "desktop"
    elif "documents" in lowered:
        location["context"] = "documents"
    return location


def file_system_context(project_path: Path) -> Dict[str, Any]:
    files: Dict[str, Any] = {"fileCount": 0, "directories": [], "importantFiles": []}
    try:
        entries = sorted(project_path.iterdir(), key=lambda p: p.name)
        for entry in entries:
            if entry.is_dir():
                if not entry.name.startswith(".") and entry.name != "node_modules":
                    files["directories"].append(entry.name)
            elif entry.is_file():
                files["fileCount"] += 1
                lowered = entry.name.lower()
                if any(pattern in lowered for pattern in IMPORTANT_PATTERNS):
                    files["importantFiles"].append(entry.name)
    except OSError as exc:
        files["error"] = str(exc)
    return files


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------
def _shell_name(shell: str) -> str:
    return shell.replace("\\", "/").split("/")[-1] or shell


def _git_status(git: Dict[str, Any]) -> str:
    status = [f"git:{git.get('branch') or 'unknown'}"]
    if git.get("hasChanges"):
        status.append("modified")
    if git.get("hasUntracked"):
        status.append("untracked")
    return " ".join(status)


def format_for_llm(context: Dict[str, Any]) -> str:
    """One-line ``SYS: ... | DIR: ... | LANG: ...`` summary."""
    system, project, tools = context["system"], context["project"], context["tools"]
    parts = [
        f"SYS: {system['os']}/{system['arch']} {_shell_name(system['shell'])} python{system.get('python', '')}",
        f"DIR: {context['location']['name']} ({context['location'].get('context') or 'unknown'})",
    ]
    if project["languages"]:
        parts.append(f"LANG: {', '.join(project['languages'])}")
    if project["frameworks"]:
        parts.append(f"FRAMEWORK: {', '.join(project['frameworks'])}")
    if project["packageManager"]:
        parts.append(f"PKG: {project['packageManager']}")

    relevant = [t for t in tools.get("devTools", []) if t in ("git", "docker", "kubectl")]
    relevant += tools.get("languages", [])[:3]
    if relevant:
        parts.append(f"TOOLS: {', '.join(relevant)}")
    if context["git"].get("isRepo"):
        parts.append(_git_status(context["git"]))

    flags = [
        name
        for name, key in (("tests", "hasTests"), ("docker", "hasDocker"), ("ci", "hasCI"))
        if project.get(key)
    ]
    if flags:
        parts.append(f"FLAGS: {', '.join(flags)}")
    return " | ".join(parts)


def to_simple_context(context: Dict[str, Any]) -> Dict[str, str]:
    """Flat key/value view used by the system prompt."""
    git = context["git"]
    languages = context["project"]["languages"]
    return {
        "os": context["system"]["os"],
        "shell": _shell_name(context["system"]["shell"]),
        "language": ", ".join(languages),
        "git_repo": f"{git.get('branch') or 'main'} branch" if git.get("isRepo") else "not a git repo",
        "package_managers": ", ".join(context["tools"].get("packageManagers", [])),
        "python_env": "yes" if "Python" in languages else "no",
    }


# ----------------------------------------------------------------------
# Cache
# ----------------------------------------------------------------------
class ContextCache:
    """Serves merged static + dynamic context for one project directory."""

    def __init__(
        self,
        project_path: Optional[Path] = None,
        *,
        tool_probe: Optional[ToolProbe] = None,
        clock: Callable[[], float] = time.time,
        ttl: float = CACHE_TTL,
    ) -> None:
        self.project_path = Path(project_path or Path.cwd()).resolve()
        self.tool_probe = tool_probe
        self.clock = clock
        self.ttl = ttl

    @property
    def cache_file(self) -> Path:
        return cache_file_path(self.project_path)

    def _read_cache(self) -> Dict[str, Any]:
        try:
            with self.cache_file.open("r", encoding="utf-8") as fh:
                cached = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise CacheError(f"Unreadable context cache {self.cache_file}: {exc}") from exc
        error = best_match(_cache_validator.iter_errors(cached))
        if error is not None:
            raise CacheError(f"Malformed context cache {self.cache_file}: {error.message}")
        return cached

    def load_cached(self) -> Optional[Dict[str, Any]]:
        """Return the cache entry if version, TTL and project hash all match."""
        if not self.cache_file.is_file():
            return None
        try:
            cached = self._read_cache()
        except CacheError as exc:
            logger.debug("%s", exc)
            return None
        if cached.get("version") != CACHE_VERSION:
            return None
        timestamp = cached.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            return None
        if self.clock() * 1000 - timestamp > self.ttl * 1000:
            return None
        if cached.get("projectHash") != project_hash(self.project_path):
            return None
        return cached

    def _write_cache(self, static: Dict[str, Any], digest: str) -> None:
        payload = {
            "version": CACHE_VERSION,
            "timestamp": int(self.clock() * 1000),
            "projectHash": digest,
            "staticc": static,
        }
        target = self.cache_file
        temp_name: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=target.parent, suffix=".tmp", delete=False
            ) as fh:
                temp_name = fh.name
                json.dump(payload, fh, indent=2)
            os.replace(temp_name, target)
        except OSError as exc:
            if temp_name is not None:
                try:
                    os.unlink(temp_name)
                except OSError:
                    pass
            raise CacheError(f"Failed to write context cache {target}: {exc}") from exc

    def static_context(self) -> Dict[str, Any]:
        return self._static()[0]

    def _static(self) -> Tuple[Dict[str, Any], bool]:
        """``(static context, served from cache)``."""
        cached = self.load_cached()
        if cached:
            logger.debug("context cache hit: %s", self.cache_file)
            return cached["staticc"], True

        logger.info("context cache miss: %s", self.project_path)
        static = {
            "system": detect_system(),
            "tools": detect_tools(self.tool_probe),
            "project": detect_project(self.project_path),
        }
        try:
            self._write_cache(static, project_hash(self.project_path))
        except CacheError as exc:
            logger.warning("%s", exc)
        return static, False

    def dynamic_context(self) -> Dict[str, Any]:
        return {
            "location": location_info(self.project_path),
            "git": git_info(self.project_path),
            "files": file_system_context(self.project_path),
        }

    def detect(self) -> Dict[str, Any]:
        static = self.static_context()
        return {**static, **self.dynamic_context()}

    def quick_status(self) -> str:
        """Compact status line; uses cached static facts when available."""
        cached = self.load_cached()
        git = git_info(self.project_path)
        location = location_info(self.project_path)
        if not cached:
            state = "modified" if git.get("hasChanges") else "clean"
            return f"DIR: {location['name']} | git:{git.get('branch') or 'no-git'} {state}"

        static = cached["staticc"]
        parts = [f"SYS: {static['system']['os']}/{static['system']['arch']}"]
        if static["project"]["languages"]:
            parts.append(f"LANG: {', '.join(static['project']['languages'])}")
        if static["project"]["packageManager"]:
            parts.append(f"PKG: {static['project']['packageManager']}")
        parts.append(f"DIR: {location['name']}")
        if git.get("isRepo"):
            parts.append(_git_status(git))
        return " | ".join(parts)

    def refresh(self) -> Dict[str, Any]:
        """Drop the cache file and rebuild the static half."""
        try:
            self.cache_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to remove context cache %s: %s", self.cache_file, exc)
        return self.static_context()

    def snapshot(self) -> Tuple[Dict[str, Any], str, Dict[str, Any]]:
        """``(full context, compact line, timing)``."""
        started = time.monotonic()
        static, cached = self._static()
        context = {**static, **self.dynamic_context()}
        timing = {"total": round((time.monotonic() - started) * 1000), "cached": cached}
        return context, format_for_llm(context), timing

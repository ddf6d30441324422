"""
Context loading for the forge.

Decides which files the implementation phase gets to see. Sources, in
priority order, all sharing one character budget:

  1. Files the plan names (plus framework companions for task keywords)
  2. Local imports of those files
  3. Keyword-ranked discovery over the rest of the tree

Nothing in here raises to the caller. Unreadable files are skipped and
an exhausted budget just means fewer files.
"""

from __future__ import annotations

import fnmatch
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

from forgeline.config_loader import ForgeConfig
from forgeline.models import ForgePlan

MIN_REMAINING_CHARS_FOR_EXPANSION = 2000
PREVIEW_MAX_FILES = 5
PREVIEW_MAX_CHARS = 6000
PREVIEW_MIN_AVAILABLE = 200

MAX_TREE_DEPTH = 8
MAX_FILE_SIZE_BYTES = 50_000
GREP_MAX_FILES = 50
GREP_MAX_LINES = 200
GREP_MAX_FILE_SIZE = 30_000
MAX_KEYWORDS = 10
MIN_KEYWORD_LENGTH = 4

SKIP_DIRS = {
    ".git", ".forgeline", ".venv", "venv", "env",
    "node_modules", ".pnpm", "target", "dist", "build", "__pycache__",
    ".tox", ".mypy_cache", ".pytest_cache", ".ruff_cache",
    ".next", ".nuxt", ".cache", "coverage", ".turbo", ".vercel", "vendor",
}

IGNORED_SUFFIXES = (
    ".lock", ".map", ".min.js", ".min.css",
    ".ico", ".png", ".jpg", ".jpeg", ".gif", ".svg",
    ".woff", ".woff2", ".ttf", ".eot", ".pyc",
)

GREPPABLE_SUFFIXES = (".ts", ".tsx", ".js", ".jsx", ".py")

NEIGHBOR_PATTERNS = ("layout", "shell", "app-shell", "navigation", "nav", "menu", "routes", "config")


class ContextLoadError(Exception):
    pass


# ---------------------------------------------------------------------------
# Keywords
# ---------------------------------------------------------------------------

STOP_WORDS = frozenset({
    "a", "o", "de", "do", "da", "em", "no", "na", "para", "por", "com",
    "que", "um", "uma", "os", "as", "dos", "das", "se", "ou", "ao",
    "the", "is", "are", "and", "or", "to", "from", "in", "of", "for", "with",
    "quero", "ser", "nao", "faz", "sentido", "opcao",
    "implementar", "criar", "remover", "adicionar", "modificar", "alterar",
    "preparar", "apenas", "rodar", "minimo", "minima", "antes", "subir", "depois",
    "sobre", "como", "cada", "todo", "todos", "toda", "todas",
    "precisa", "deve", "fazer", "ainda", "tambem", "quando", "onde",
    "esta", "esse", "essa", "este", "estes", "essas", "esses",
    "entre", "apos", "ate", "sem", "mais", "menos", "muito", "muita",
    "usar", "utilizar", "incluir", "excluir", "manter", "atualizar",
    "garantir", "verificar", "testar", "aplicar", "executar", "corrigir",
    "ajustar", "configurar", "definir", "revisar", "validar",
    "novo", "nova", "novos", "novas", "atual", "antigo",
    "primeiro", "segundo", "ultimo", "proximo",
    "teste", "testes", "tests", "lint", "build", "push", "pull", "merge", "commit",
    "registrar", "conforme", "mudanca", "mudancas", "mapeamento",
    "evidencias", "evidencia", "necessario", "necessaria",
    "according", "change", "changes", "minimum", "mapping",
    "ensure", "check", "update", "run", "make", "that", "this",
    "implement", "create", "remove", "modify", "should", "when", "into",
})

STOP_VERB_STEMS = frozenset({
    "implement", "cri", "remov", "adicion", "modific", "alter",
    "prepar", "rod", "sub", "faz", "us", "utiliz", "inclu",
    "exclu", "mant", "atualiz", "garant", "verific", "test",
    "aplic", "execut", "corrig", "ajust", "configur", "defin",
    "revis", "valid", "registr", "mape",
})


def normalize_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _is_conjugated_stop_verb(word: str) -> bool:
    # gerund (-ando/-endo/-indo) and participle (-ado/-ido, plural -s) forms
    if word.endswith(("ando", "endo", "indo")) and word[:-4] in STOP_VERB_STEMS:
        return True
    if word.endswith(("ados", "idos")):
        return word[:-4] in STOP_VERB_STEMS
    if word.endswith(("ado", "ido")):
        return word[:-3] in STOP_VERB_STEMS
    return False


def extract_keywords(*sources: str) -> list[str]:
    """Distinct lowercase keywords (>= 4 chars, no stop words), first ten."""
    text = normalize_accents(" ".join(s for s in sources if s)).lower()
    words = re.sub(r"[^a-z0-9\s-]", " ", text).split()
    keywords: dict[str, None] = {}
    for word in words:
        if len(word) < MIN_KEYWORD_LENGTH or word in STOP_WORDS or _is_conjugated_stop_verb(word):
            continue
        keywords.setdefault(word, None)
    return list(keywords)[:MAX_KEYWORDS]


# ---------------------------------------------------------------------------
# Project structure
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProjectFile:
    path: str
    size: int


@dataclass
class ProjectStructure:
    tree: str
    files: list[ProjectFile] = field(default_factory=list)

    @property
    def paths(self) -> set[str]:
        return {f.path for f in self.files}


def discover_structure(workspace: Path) -> ProjectStructure:
    files: list[ProjectFile] = []
    tree_lines: list[str] = []

    def walk(directory: Path, depth: int, prefix: str) -> None:
        if depth > MAX_TREE_DEPTH:
            return
        try:
            entries = [e for e in directory.iterdir() if not e.name.startswith(".") or e.name == ".env.example"]
        except OSError:
            return
        entries.sort(key=lambda e: (not e.is_dir(), e.name))

        for entry in entries:
            if entry.is_dir():
                if entry.name in SKIP_DIRS:
                    continue
                tree_lines.append(f"{prefix}{entry.name}/")
                walk(entry, depth + 1, prefix + "  ")
                continue
            if entry.name.endswith(IGNORED_SUFFIXES):
                continue
            try:
                size = entry.stat().st_size
            except OSError:
                size = 0
            files.append(ProjectFile(entry.relative_to(workspace).as_posix(), size))
            tree_lines.append(f"{prefix}{entry.name}")

    walk(workspace, 0, "")
    return ProjectStructure(tree="\n".join(tree_lines), files=files)


def truncate_with_budget(content: str, used: int, max_chars: int) -> str:
    available = max_chars - used
    if len(content) <= available:
        return content
    return content[:max(0, available)] + "\n... (truncated)"


def read_text(workspace: Path, rel_path: str, max_lines: int | None = None) -> str:
    full = workspace / rel_path
    try:
        if max_lines is None:
            return full.read_text(encoding="utf-8")
        with open(full, "r", encoding="utf-8", errors="ignore") as f:
            return "".join(line for _, line in zip(range(max_lines), f))
    except (OSError, UnicodeDecodeError) as e:
        raise ContextLoadError(f"Could not read {rel_path}: {e}") from e


# ---------------------------------------------------------------------------
# Framework rules
# ---------------------------------------------------------------------------

FRAMEWORK_RULES: dict[str, dict[str, tuple[str, ...]]] = {
    "nextjs": {
        "page": ("layout.tsx", "layout.ts", "loading.tsx", "error.tsx"),
        "route": ("layout.tsx", "layout.ts", "page.tsx", "page.ts"),
        "sidebar": ("app-shell*", "layout.tsx", "navigation*", "nav*"),
        "menu": ("app-shell*", "layout.tsx", "sidebar*", "navigation*"),
        "layout": ("page.tsx", "page.ts", "app-shell*"),
        "middleware": ("middleware.ts", "middleware.js"),
        "api": ("route.ts", "route.js"),
    },
    "nestjs": {
        "controller": ("*.module.ts", "*.service.ts", "*.dto.ts"),
        "service": ("*.module.ts", "*.controller.ts", "*.repository.ts"),
        "module": ("*.controller.ts", "*.service.ts", "*.entity.ts"),
        "guard": ("*.module.ts", "auth*"),
        "entity": ("*.repository.ts", "*.service.ts", "*.module.ts"),
    },
    "react": {
        "component": ("index.ts", "index.tsx", "*.types.ts", "*.styles.ts"),
        "hook": ("*.types.ts", "use*.ts", "use*.tsx"),
        "context": ("*.provider.tsx", "*.context.tsx", "use*.ts"),
        "form": ("*.schema.ts", "*.validation.ts", "use*.ts"),
        "modal": ("*.types.ts", "index.ts"),
        "table": ("*.columns.tsx", "*.types.ts", "use*.ts"),
    },
    "turbo": {
        "package": ("package.json", "index.ts", "tsconfig.json"),
        "shared": ("index.ts", "package.json"),
    },
    "python": {
        "model": ("models.py", "schemas.py"),
        "config": ("settings.py", "config.py", "config_loader.py"),
        "route": ("urls.py", "routes.py", "views.py"),
        "command": ("cli.py", "__main__.py"),
    },
}


def _rule_sets_for(framework: str) -> list[str]:
    lower = framework.lower()
    matched = []
    if "next" in lower:
        matched.append("nextjs")
    if "nest" in lower:
        matched.append("nestjs")
    if "react" in lower or "next" in lower:
        matched.append("react")
    if "turbo" in lower or "mono" in lower:
        matched.append("turbo")
    if lower in ("python", "django", "flask", "fastapi"):
        matched.append("python")
    return matched or ["react"]


def contextual_patterns(framework: str, keywords: list[str]) -> list[str]:
    """Filename globs worth loading next to files about these keywords."""
    patterns: list[str] = []
    for name in _rule_sets_for(framework):
        rules = FRAMEWORK_RULES[name]
        for keyword in keywords:
            for pattern in rules.get(keyword, ()):
                if pattern not in patterns:
                    patterns.append(pattern)
    return patterns


def glob_files(structure: ProjectStructure, patterns: list[str]) -> list[str]:
    found = []
    for f in structure.files:
        name = f.path.rsplit("/", 1)[-1]
        if any(fnmatch.fnmatch(name, p) for p in patterns):
            found.append(f.path)
    return found


# ---------------------------------------------------------------------------
# Import resolution
# ---------------------------------------------------------------------------

_JS_IMPORT = re.compile(r"""(?:import|export)\s[^'"]*?from\s+['"](\.{1,2}/[^'"]+)['"]|require\(\s*['"](\.{1,2}/[^'"]+)['"]\s*\)""")
_PY_FROM_IMPORT = re.compile(r"^from\s+(\.*[a-zA-Z0-9_\.]*)\s+import\s+(.+)$", re.MULTILINE)
_PY_IMPORT = re.compile(r"^import\s+([a-zA-Z0-9_\.]+)", re.MULTILINE)

_JS_EXTENSIONS = ("", ".ts", ".tsx", ".js", ".jsx", "/index.ts", "/index.tsx", "/index.js")


def _posix_join(base_dir: str, rel: str) -> str:
    parts = [p for p in base_dir.split("/") if p] if base_dir else []
    for piece in rel.split("/"):
        if piece in ("", "."):
            continue
        if piece == "..":
            if parts:
                parts.pop()
            continue
        parts.append(piece)
    return "/".join(parts)


def _resolve_js(source: str, spec: str, all_paths: set[str]) -> str | None:
    base_dir = source.rsplit("/", 1)[0] if "/" in source else ""
    target = _posix_join(base_dir, spec)
    for ext in _JS_EXTENSIONS:
        if target + ext in all_paths:
            return target + ext
    return None


def _resolve_python(source: str, module: str, names: str, all_paths: set[str]) -> list[str]:
    if module.startswith("."):
        dots = len(module) - len(module.lstrip("."))
        base_parts = source.split("/")[:-1]
        base_parts = base_parts[:len(base_parts) - (dots - 1)] if dots > 1 else base_parts
        rest = module.lstrip(".")
        base = "/".join(base_parts + (rest.split(".") if rest else []))
    else:
        base = module.replace(".", "/")

    candidates = [f"{base}.py", f"{base}/__init__.py", f"src/{base}.py", f"src/{base}/__init__.py"]
    # `from pkg import mod` may name submodules
    for name in names.replace("(", " ").replace(")", " ").split(","):
        name = name.strip().split(" ")[0]
        if name and name != "*":
            candidates += [f"{base}/{name}.py", f"src/{base}/{name}.py"]
    return [c.lstrip("/") for c in candidates if c.lstrip("/") in all_paths]


def resolve_local_imports(source: str, content: str, all_paths: set[str]) -> list[str]:
    """Workspace files imported by `source`, in import order."""
    resolved: list[str] = []
    if source.endswith((".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")):
        for match in _JS_IMPORT.finditer(content):
            path = _resolve_js(source, match.group(1) or match.group(2), all_paths)
            if path:
                resolved.append(path)
    elif source.endswith(".py"):
        for match in _PY_FROM_IMPORT.finditer(content):
            resolved += _resolve_python(source, match.group(1), match.group(2), all_paths)
        for match in _PY_IMPORT.finditer(content):
            resolved += _resolve_python(source, match.group(1), "", all_paths)
    return [p for i, p in enumerate(resolved) if p != source and p not in resolved[:i]]


def extract_signatures(path: str, content: str) -> str:
    """Class/function/export lines only, for files too big to include whole."""
    lines = []
    for line in content.splitlines():
        stripped = line.strip()
        if path.endswith(".py"):
            if stripped.startswith(("class ", "def ", "async def ")):
                lines.append(stripped.split(":")[0] + ":")
        elif stripped.startswith("export "):
            sig = stripped.split("{")[0].strip()
            if sig:
                lines.append(sig)
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Keyword discovery
# ---------------------------------------------------------------------------

def score_path(path: str, keywords: list[str]) -> int:
    lower = path.lower()
    parts = re.split(r"[/\\.\-_]", lower)
    score = 0
    for keyword in keywords:
        if keyword in lower:
            score += 3
        for part in parts:
            if part == keyword:
                score += 5
            elif keyword in part:
                score += 2
    if score > 0:
        if lower.endswith((".tsx", ".ts", ".jsx", ".py")):
            score += 1
        if any(hint in lower for hint in ("component", "page", "layout")):
            score += 1
    return score


def rank_files(workspace: Path, structure: ProjectStructure, keywords: list[str]) -> list[str]:
    """Paths ordered by relevance: name matches, then content matches, then neighbors."""
    if not keywords:
        return []

    scored: dict[str, int] = {}
    for f in structure.files:
        if f.size == 0 or f.size > MAX_FILE_SIZE_BYTES:
            continue
        score = score_path(f.path, keywords)
        if score > 0:
            scored[f.path] = score

    scanned = 0
    for f in structure.files:
        if scanned >= GREP_MAX_FILES:
            break
        if f.path in scored or not f.path.endswith(GREPPABLE_SUFFIXES):
            continue
        if f.size == 0 or f.size > GREP_MAX_FILE_SIZE:
            continue
        scanned += 1
        try:
            head = read_text(workspace, f.path, GREP_MAX_LINES).lower()
        except ContextLoadError:
            continue
        score = sum(4 for k in keywords if k in head)
        if score > 0:
            scored[f.path] = score

    if scored:
        parent_dirs = {p.rsplit("/", 1)[0] for p in scored if "/" in p}
        for f in structure.files:
            if f.path in scored or f.size == 0 or f.size > MAX_FILE_SIZE_BYTES:
                continue
            directory, _, name = f.path.rpartition("/")
            if directory and any(directory.startswith(d) for d in parent_dirs) \
                    and any(p in name.lower() for p in NEIGHBOR_PATTERNS):
                scored[f.path] = 2

    return sorted(scored, key=lambda p: -scored[p])


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

class ContextLoader:
    """Builds the file context for one workspace."""

    def __init__(self, workspace: Path, forge: ForgeConfig, framework: str = "default"):
        self.workspace = workspace
        self.forge = forge
        self.framework = framework
        self._structure: ProjectStructure | None = None

    @property
    def structure(self) -> ProjectStructure:
        if self._structure is None:
            self._structure = discover_structure(self.workspace)
        return self._structure

    @property
    def file_tree(self) -> str:
        return self.structure.tree

    def exists(self, rel_path: str) -> bool:
        return rel_path in self.structure.paths

    def _read_into(self, context: dict[str, str], paths: list[str], max_chars: int) -> int:
        used = sum(len(c) for c in context.values())
        for path in paths:
            if used >= max_chars:
                break
            if path in context:
                continue
            try:
                content = read_text(self.workspace, path)
            except ContextLoadError as e:
                logger.debug(f"[CONTEXT] {e}")
                continue
            trimmed = truncate_with_budget(content, used, max_chars)
            context[path] = trimmed
            used += len(trimmed)
        return used

    def planning_preview(self, task: str) -> dict[str, str]:
        """A handful of likely files so the planner can see real code."""
        if not self.forge.enable_planning_preview:
            return {}
        keywords = extract_keywords(task)
        ranked = rank_files(self.workspace, self.structure, keywords)[:PREVIEW_MAX_FILES]

        preview: dict[str, str] = {}
        used = 0
        for path in ranked:
            if used + PREVIEW_MIN_AVAILABLE > PREVIEW_MAX_CHARS:
                break
            try:
                content = read_text(self.workspace, path)
            except ContextLoadError as e:
                logger.debug(f"[CONTEXT] {e}")
                continue
            trimmed = truncate_with_budget(content, used, PREVIEW_MAX_CHARS)
            preview[path] = trimmed
            used += len(trimmed)
        return preview

    def load(self, plan: ForgePlan, task: str, expected_output: str = "") -> dict[str, str]:
        max_chars = self.forge.context_max_chars
        keywords = extract_keywords(task, expected_output)

        requested = [*plan.files_to_modify, *plan.files_to_read]
        if self.forge.enable_framework_rules:
            patterns = contextual_patterns(self.framework, keywords)
            if patterns:
                requested += [p for p in glob_files(self.structure, patterns) if p not in requested]

        context: dict[str, str] = {}
        used = self._read_into(context, list(dict.fromkeys(requested)), max_chars)
        planned_count = len(context)

        imported = 0
        if self.forge.enable_import_expansion and max_chars - used > MIN_REMAINING_CHARS_FOR_EXPANSION:
            imported = self._expand_imports(context, max_chars)
            used = sum(len(c) for c in context.values())

        discovered = 0
        if max_chars - used > MIN_REMAINING_CHARS_FOR_EXPANSION:
            discovered = self._discover(context, keywords, max_chars - used)

        logger.info(
            f"[CONTEXT] Loaded {len(context)} file(s): "
            f"{planned_count} planned, {imported} imported, {discovered} discovered "
            f"({sum(len(c) for c in context.values())} chars)"
        )
        return context

    def _expand_imports(self, context: dict[str, str], max_chars: int) -> int:
        all_paths = self.structure.paths
        added = 0
        for source, content in list(context.items()):
            for dep in resolve_local_imports(source, content, all_paths):
                if dep in context:
                    continue
                used = sum(len(c) for c in context.values())
                if max_chars - used <= MIN_REMAINING_CHARS_FOR_EXPANSION:
                    return added
                try:
                    dep_content = read_text(self.workspace, dep)
                except ContextLoadError as e:
                    logger.debug(f"[CONTEXT] {e}")
                    continue
                if len(dep_content) > max_chars - used:
                    dep_content = extract_signatures(dep, dep_content)
                    if not dep_content or len(dep_content) > max_chars - used:
                        continue
                context[dep] = dep_content
                added += 1
        return added

    def _discover(self, context: dict[str, str], keywords: list[str], remaining: int) -> int:
        ranked = rank_files(self.workspace, self.structure, keywords)[:self.forge.max_context_files]
        added = 0
        used = 0
        for path in ranked:
            if path in context:
                continue
            try:
                content = read_text(self.workspace, path)
            except ContextLoadError as e:
                logger.debug(f"[CONTEXT] {e}")
                continue
            if used + len(content) > remaining:
                break
            context[path] = content
            used += len(content)
            added += 1
        return added

    def first_lines(self, paths: list[str], lines: int) -> dict[str, str]:
        snippets: dict[str, str] = {}
        for path in paths:
            try:
                snippets[path] = read_text(self.workspace, path, lines).rstrip("\n")
            except ContextLoadError:
                continue
        return snippets

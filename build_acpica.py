"""ACPICA build pipeline for the acpica-sys ctypes bindings.

Stages a pristine copy of the vendored ACPICA source tree, swaps the vendor's
OS detection block for the acrust.h platform header, compiles the interpreter
components into a static archive and generates freestanding ctypes
declarations from the umbrella header.

Usage:
    python build_acpica.py
    python build_acpica.py --debug-output --out-dir build
"""

import argparse
import ast
import ctypes
import heapq
import json
import os
import re
import shlex
import shutil
import stat
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from clang.cindex import (
    Cursor,
    CursorKind,
    Diagnostic,
    Index,
    LibclangError,
    StorageClass,
    TranslationUnit,
    TranslationUnitLoadError,
    Type,
    TypeKind,
)

PROJECT_ROOT = Path(__file__).resolve().parent
DEFAULT_VENDOR_SOURCE = PROJECT_ROOT / "acpica" / "source"
DEFAULT_SHIM_HEADER = PROJECT_ROOT / "c_headers" / "acrust.h"
DEFAULT_UMBRELLA_HEADER = PROJECT_ROOT / "c_headers" / "wrapper.h"
DEFAULT_PROFILE = PROJECT_ROOT / "vendor_profile.json"
DEFAULT_OUTPUT = PROJECT_ROOT / "acpica_sys" / "bindings.py"
DEFAULT_OUT_DIR = PROJECT_ROOT / "build"
DEFAULT_FORMAT_COMMAND = (sys.executable, "-m", "ruff", "format", "--quiet")
WORKSPACE_PREFIX = "acpica-sys-"


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class BuildConfig:
    vendor_source: Path
    shim_header: Path
    umbrella_header: Path
    profile: Path
    output: Path
    out_dir: Path
    debug_output: bool
    format_command: tuple[str, ...] | None
    workspace_dir: Path | None = None


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_PROFILE",
    "INVALID_FORMAT_COMMAND",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Build the ACPICA static archive and ctypes bindings"
    )

    parser.add_argument("--vendor-source", type=Path, default=DEFAULT_VENDOR_SOURCE)
    parser.add_argument("--shim-header", type=Path, default=DEFAULT_SHIM_HEADER)
    parser.add_argument(
        "--umbrella-header", type=Path, default=DEFAULT_UMBRELLA_HEADER
    )
    parser.add_argument("--profile", type=Path, default=DEFAULT_PROFILE)
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT)
    parser.add_argument("--out-dir", type=Path, default=DEFAULT_OUT_DIR)
    parser.add_argument("--workspace-dir", type=Path, default=None)
    parser.add_argument("--debug-output", action="store_true", default=False)

    format_group = parser.add_mutually_exclusive_group()
    format_group.add_argument("--formatter", type=str, default=None)
    format_group.add_argument("--skip-format", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def parse_format_command(raw: str | None) -> tuple[str, ...]:
    if raw is None:
        return DEFAULT_FORMAT_COMMAND
    command = tuple(shlex.split(raw))
    if not command:
        raise ConfigError(
            "INVALID_FORMAT_COMMAND",
            "--formatter must name a command.",
            "Pass a command such as --formatter 'ruff format', or use --skip-format.",
        )
    return command


def validate_config(args: argparse.Namespace) -> BuildConfig:
    vendor_source = validate_path_exists(
        args.vendor_source,
        "--vendor-source",
        "Check out the ACPICA submodule: git submodule update --init acpica",
    )
    shim_header = validate_path_exists(args.shim_header, "--shim-header")
    umbrella_header = validate_path_exists(args.umbrella_header, "--umbrella-header")
    profile = validate_path_exists(args.profile, "--profile")

    if args.skip_format:
        format_command = None
    else:
        format_command = parse_format_command(args.formatter)

    return BuildConfig(
        vendor_source=vendor_source,
        shim_header=shim_header,
        umbrella_header=umbrella_header,
        profile=profile,
        output=args.output,
        out_dir=args.out_dir,
        debug_output=args.debug_output,
        format_command=format_command,
        workspace_dir=args.workspace_dir,
    )


def build_config(argv: list[str] | None = None) -> BuildConfig:
    args = parse_args(argv)
    return validate_config(args)


# ===--- Vendor profile ---=== #


@dataclass(frozen=True)
class SentinelRule:
    """Pattern-and-replacement pair for the vendor's OS detection block.

    Attributes:
        pattern: Compiled multi-line pattern matching the whole block, from the
            OS-conditional directive to its terminating #endif.
        replacement: Text inserted literally in place of the block.
    """

    pattern: re.Pattern[str]
    replacement: str


@dataclass(frozen=True)
class VendorProfile:
    """Data describing one snapshot of the vendor tree.

    Everything here is coupled to a particular ACPICA release. A vendor update
    should only need an edit to vendor_profile.json.

    Attributes:
        library_name: Archive name without prefix or suffix ("acpica" builds
            libacpica.a).
        environment_header: Path of the header holding the sentinel block,
            relative to the source root.
        shim_install_dir: Directory the platform shim is copied into, relative
            to the source root.
        sentinel: Block to replace in the environment header.
        excluded_components: Component directory names that are never compiled.
        debug_define: Preprocessor define passed when --debug-output is set.
    """

    library_name: str
    environment_header: PurePosixPath
    shim_install_dir: PurePosixPath
    sentinel: SentinelRule
    excluded_components: frozenset[str]
    debug_define: str

    @property
    def archive_filename(self) -> str:
        return f"lib{self.library_name}.a"


def _profile_error(path: Path, message: str) -> ConfigError:
    return ConfigError(
        "INVALID_PROFILE",
        f"Invalid vendor profile {path}: {message}",
        "Compare the file against vendor_profile.json in the repository root.",
    )


def _require_string(data: dict, key: str, path: Path) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise _profile_error(path, f"'{key}' must be a non-empty string")
    return value


def _require_relative(data: dict, key: str, path: Path) -> PurePosixPath:
    value = PurePosixPath(_require_string(data, key, path))
    if value.is_absolute() or ".." in value.parts:
        raise _profile_error(path, f"'{key}' must be relative to the source root")
    return value


def load_vendor_profile(path: Path) -> VendorProfile:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as err:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"Could not read vendor profile {path}: {err.strerror or err}",
        ) from err
    except json.JSONDecodeError as err:
        raise _profile_error(path, f"not valid JSON ({err.msg})") from err

    if not isinstance(data, dict):
        raise _profile_error(path, "top level must be an object")

    sentinel = data.get("sentinel")
    if not isinstance(sentinel, dict):
        raise _profile_error(path, "'sentinel' must be an object")
    raw_pattern = _require_string(sentinel, "pattern", path)
    try:
        pattern = re.compile(raw_pattern)
    except re.error as err:
        raise _profile_error(path, f"sentinel pattern does not compile ({err})") from err

    excluded = data.get("excluded_components")
    if not isinstance(excluded, list) or not all(
        isinstance(name, str) and name for name in excluded
    ):
        raise _profile_error(path, "'excluded_components' must be a list of names")

    return VendorProfile(
        library_name=_require_string(data, "library_name", path),
        environment_header=_require_relative(data, "environment_header", path),
        shim_install_dir=_require_relative(data, "shim_install_dir", path),
        sentinel=SentinelRule(
            pattern=pattern,
            replacement=_require_string(sentinel, "replacement", path),
        ),
        excluded_components=frozenset(excluded),
        debug_define=_require_string(data, "debug_define", path),
    )


# ===--- Build errors ---=== #


VALID_STAGES = {"STAGE", "PATCH", "COMPILE", "BINDGEN", "REWRITE", "FORMAT"}


class BuildError(Exception):
    """Fatal pipeline failure, tagged with the stage that raised it.

    There is no recovery path for any stage. The message names the path or
    pattern involved so a human can fix the vendor tree, shim header or
    toolchain and re-run the whole pipeline.
    """

    def __init__(
        self,
        stage: str,
        message: str,
        path: Path | None = None,
        hint: str | None = None,
    ):
        if stage not in VALID_STAGES:
            raise ValueError(f"Unknown build stage: {stage}")
        super().__init__(message)
        self.stage = stage
        self.message = message
        self.path = path
        self.hint = hint


# ===--- Workspace ---=== #


class Workspace:
    """Ephemeral staging directory owned by a single pipeline run.

    Use as a context manager. The directory is removed when the with-block
    exits, whether normally or through an exception. A forced kill or an
    interpreter crash leaves it behind under the system temp directory with
    the acpica-sys- prefix.
    """

    def __init__(self, handle: tempfile.TemporaryDirectory):
        self._handle = handle
        self._root = Path(handle.name)

    @classmethod
    def create(cls, parent: Path | None = None) -> "Workspace":
        try:
            handle = tempfile.TemporaryDirectory(prefix=WORKSPACE_PREFIX, dir=parent)
        except OSError as err:
            location = parent if parent is not None else Path(tempfile.gettempdir())
            raise BuildError(
                "STAGE",
                f"Could not create workspace directory: {err.strerror or err}",
                path=location,
            ) from err
        return cls(handle)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def source_root(self) -> Path:
        return self._root / "source"

    @property
    def include_root(self) -> Path:
        return self.source_root / "include"

    @property
    def components_root(self) -> Path:
        return self.source_root / "components"

    @property
    def artifacts_dir(self) -> Path:
        return self._root / "artifacts"

    def cleanup(self) -> None:
        self._handle.cleanup()

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


# ===--- Stage 1: source staging ---=== #


def stage_source_tree(
    workspace: Workspace,
    vendor_source: Path,
    shim_header: Path,
    profile: VendorProfile,
) -> Path:
    """Copy the vendor tree into the workspace and drop in the platform shim.

    Returns:
        Path of the shim header inside the staged tree.

    Raises:
        BuildError: STAGE on any copy failure, or when the copied tree lacks
            the platform include or components directories.
    """
    try:
        shutil.copytree(vendor_source, workspace.source_root)
    except shutil.Error as err:
        failures = err.args[0] if err.args and isinstance(err.args[0], list) else []
        first = Path(failures[0][0]) if failures else vendor_source
        raise BuildError(
            "STAGE",
            f"Failed to copy {len(failures) or 'some'} vendor source entries",
            path=first,
        ) from err
    except OSError as err:
        raise BuildError(
            "STAGE",
            f"Failed to copy vendor source tree: {err.strerror or err}",
            path=Path(err.filename) if err.filename else vendor_source,
        ) from err

    shim_dir = workspace.source_root / profile.shim_install_dir
    if not shim_dir.is_dir():
        raise BuildError(
            "STAGE",
            "Vendor tree has no platform include directory",
            path=vendor_source / profile.shim_install_dir,
        )
    if not workspace.components_root.is_dir():
        raise BuildError(
            "STAGE",
            "Vendor tree has no components directory",
            path=vendor_source / "components",
        )

    staged_shim = shim_dir / shim_header.name
    try:
        shutil.copyfile(shim_header, staged_shim)
        workspace.artifacts_dir.mkdir()
    except OSError as err:
        raise BuildError(
            "STAGE",
            f"Failed to stage platform header: {err.strerror or err}",
            path=Path(err.filename) if err.filename else shim_header,
        ) from err
    return staged_shim


# ===--- Stage 2: environment header patch ---=== #


def apply_sentinel_rule(
    text: str, rule: SentinelRule, source: Path | None = None
) -> str:
    """Replace the single sentinel block in text.

    The block must occur exactly once. A missing block (vendor layout changed
    or the header is already patched) and duplicate blocks are both fatal.

    Raises:
        BuildError: PATCH when the block count is not one or the result would
            be unchanged.
    """
    matches = list(rule.pattern.finditer(text))
    if not matches:
        raise BuildError(
            "PATCH",
            f"Sentinel block not found (pattern {rule.pattern.pattern}); "
            "the header is already patched or the vendor layout changed",
            path=source,
            hint="Update the sentinel pattern in vendor_profile.json.",
        )
    if len(matches) > 1:
        raise BuildError(
            "PATCH",
            f"Expected exactly one sentinel block, found {len(matches)} "
            f"(pattern {rule.pattern.pattern})",
            path=source,
        )

    patched = rule.pattern.sub(lambda _match: rule.replacement, text, count=1)
    if patched == text:
        raise BuildError(
            "PATCH",
            "Sentinel replacement left the header unchanged",
            path=source,
        )
    if rule.pattern.search(patched):
        raise BuildError(
            "PATCH",
            "Sentinel block still present after patching",
            path=source,
        )
    return patched


def patch_environment_header(workspace: Workspace, profile: VendorProfile) -> Path:
    header = workspace.source_root / profile.environment_header
    try:
        text = header.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as err:
        raise BuildError(
            "PATCH", f"Could not read environment header: {err}", path=header
        ) from err

    patched = apply_sentinel_rule(text, profile.sentinel, source=header)

    try:
        header.write_text(patched, encoding="utf-8")
    except OSError as err:
        raise BuildError(
            "PATCH",
            f"Could not write patched environment header: {err.strerror or err}",
            path=header,
        ) from err
    return header


# ===--- Stage 3: component compilation ---=== #


COMPILE_FLAGS = ("-w", "-fno-stack-protector", "-O1")
"""Fixed flags for every translation unit.

The target is freestanding and has no stack-protector runtime, so the
instrumentation is switched off. Vendor warnings are not actionable here."""


@dataclass(frozen=True)
class Toolchain:
    cc: tuple[str, ...]
    ar: tuple[str, ...]


@dataclass(frozen=True)
class CompiledArchive:
    """Static library produced from the non-excluded components.

    Attributes:
        path: Location of lib<name>.a in the output directory.
        library_name: Name to pass to the linker as -l<name>.
        sources: Compiled sources relative to the components root, in
            compilation order.
    """

    path: Path
    library_name: str
    sources: tuple[str, ...]

    @property
    def link_args(self) -> tuple[str, str]:
        return (f"-L{self.path.parent}", f"-l{self.library_name}")


def resolve_toolchain(environ: dict[str, str] | None = None) -> Toolchain:
    """Resolve the C compiler and archiver from CC / AR.

    Raises:
        BuildError: COMPILE when either tool cannot be found on PATH.
    """
    env = os.environ if environ is None else environ
    cc = tuple(shlex.split(env.get("CC", "cc")))
    ar = tuple(shlex.split(env.get("AR", "ar")))
    for tool, variable in ((cc, "CC"), (ar, "AR")):
        if not tool or shutil.which(tool[0]) is None:
            raise BuildError(
                "COMPILE",
                f"{variable} tool not found: {' '.join(tool) or '<empty>'}",
                hint=f"Install a C toolchain or point {variable} at one.",
            )
    return Toolchain(cc=cc, ar=ar)


def collect_component_sources(
    components_root: Path, excluded: frozenset[str]
) -> list[Path]:
    """Return every file directly inside each non-excluded component directory.

    Only one level below each component is scanned. Excluded components are
    dropped by directory name before any of their files are looked at.
    """
    try:
        component_dirs = sorted(p for p in components_root.iterdir() if p.is_dir())
    except OSError as err:
        raise BuildError(
            "COMPILE",
            f"Could not list components: {err.strerror or err}",
            path=components_root,
        ) from err

    sources: list[Path] = []
    for component_dir in component_dirs:
        if component_dir.name in excluded:
            continue
        try:
            entries = sorted(component_dir.iterdir())
        except OSError as err:
            raise BuildError(
                "COMPILE",
                f"Could not list component files: {err.strerror or err}",
                path=component_dir,
            ) from err
        sources.extend(entry for entry in entries if entry.is_file())
    return sources


def object_path_for(source: Path, artifacts_dir: Path) -> Path:
    return artifacts_dir / f"{source.parent.name}__{source.name}.o"


def build_compile_command(
    toolchain: Toolchain,
    source: Path,
    obj: Path,
    include_root: Path,
    debug_define: str | None,
) -> list[str]:
    command = [*toolchain.cc, "-c", *COMPILE_FLAGS, f"-I{include_root}"]
    if debug_define:
        command.append(f"-D{debug_define}")
    command.extend(["-o", str(obj), str(source)])
    return command


def _run_tool(command: list[str], stage: str, path: Path) -> None:
    try:
        result = subprocess.run(command, capture_output=True, text=True, check=False)
    except OSError as err:
        raise BuildError(
            stage, f"Could not run {command[0]}: {err.strerror or err}", path=path
        ) from err
    if result.returncode != 0:
        output = (result.stderr or result.stdout).strip()
        raise BuildError(
            stage,
            f"{command[0]} exited with status {result.returncode}"
            + (f":\n{output}" if output else ""),
            path=path,
        )


def compile_components(
    workspace: Workspace,
    toolchain: Toolchain,
    profile: VendorProfile,
    out_dir: Path,
    debug_output: bool = False,
) -> CompiledArchive:
    """Compile all non-excluded component sources into lib<name>.a.

    Each translation unit is compiled on its own; no source relies on another
    having been compiled first. The first failure aborts the build.

    Raises:
        BuildError: COMPILE on any compiler or archiver failure.
    """
    sources = collect_component_sources(
        workspace.components_root, profile.excluded_components
    )
    if not sources:
        raise BuildError(
            "COMPILE",
            "No component sources found to compile",
            path=workspace.components_root,
        )

    debug_define = profile.debug_define if debug_output else None
    objects: list[Path] = []
    compiled: list[str] = []
    for source in sources:
        relative = source.relative_to(workspace.components_root).as_posix()
        print(f"  adding component: {relative}")
        obj = object_path_for(source, workspace.artifacts_dir)
        command = build_compile_command(
            toolchain, source, obj, workspace.include_root, debug_define
        )
        _run_tool(command, "COMPILE", source)
        objects.append(obj)
        compiled.append(relative)

    staged_archive = workspace.artifacts_dir / profile.archive_filename
    _run_tool(
        [*toolchain.ar, "crs", str(staged_archive), *(str(o) for o in objects)],
        "COMPILE",
        staged_archive,
    )

    archive = out_dir / profile.archive_filename
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        shutil.move(str(staged_archive), str(archive))
    except OSError as err:
        raise BuildError(
            "COMPILE",
            f"Could not install archive: {err.strerror or err}",
            path=archive,
        ) from err

    return CompiledArchive(
        path=archive.resolve(),
        library_name=profile.library_name,
        sources=tuple(compiled),
    )


# ===--- Stage 4: binding model ---=== #


@dataclass(frozen=True)
class ConstantDecl:
    name: str
    value: int | bytes


@dataclass(frozen=True)
class EnumDecl:
    """One enum definition.

    Attributes:
        name: Tag or typedef name; None for an unnamed enum, which only
            contributes its variants.
        int_type: ctypes expression for the underlying integer type.
        variants: (name, value) pairs in declaration order.
    """

    name: str | None
    int_type: str
    variants: tuple[tuple[str, int], ...]


@dataclass(frozen=True)
class FieldDecl:
    name: str
    ctype: str
    bit_width: int | None = None


@dataclass(frozen=True)
class RecordDecl:
    """A struct or union, possibly opaque.

    Attributes:
        name: Python class name.
        kind: "struct" or "union".
        fields: Layout in declaration order. Empty for opaque records.
        opaque: True when no definition was visible.
        pack: Maximum field alignment when the record is packed tighter than
            its fields' natural alignment (e.g. #pragma pack), else None.
        anonymous: Field names to list in _anonymous_.
        requires: Statement keys ("typedef:X", "layout:Y") that must be
            emitted before this record's _fields_ assignment.
        position: Source order of the definition among typedefs and layouts.
    """

    name: str
    kind: str
    fields: tuple[FieldDecl, ...]
    opaque: bool
    pack: int | None = None
    anonymous: tuple[str, ...] = ()
    requires: frozenset[str] = frozenset()
    position: int = -1


@dataclass(frozen=True)
class TypedefDecl:
    name: str
    target: str
    requires: frozenset[str] = frozenset()
    position: int = -1


@dataclass(frozen=True)
class FunctionDecl:
    name: str
    restype: str
    argtypes: tuple[str, ...]
    variadic: bool = False


@dataclass(frozen=True)
class BindingSet:
    """Ordered declarations visible from the umbrella header.

    statement_order lists "typedef:<name>" and "layout:<name>" keys in the
    order they must be emitted so every name and every by-value record is
    complete before use.
    """

    constants: tuple[ConstantDecl, ...]
    enums: tuple[EnumDecl, ...]
    records: tuple[RecordDecl, ...]
    typedefs: tuple[TypedefDecl, ...]
    functions: tuple[FunctionDecl, ...]
    statement_order: tuple[str, ...]

    @property
    def structs(self) -> tuple[RecordDecl, ...]:
        return tuple(r for r in self.records if r.kind == "struct")

    @property
    def unions(self) -> tuple[RecordDecl, ...]:
        return tuple(r for r in self.records if r.kind == "union")


# ===--- Stage 4: constant evaluation ---=== #


C_TYPE_WORDS = frozenset(
    {
        "_Bool",
        "char",
        "const",
        "int",
        "long",
        "short",
        "signed",
        "unsigned",
        "volatile",
    }
)
C_QUALIFIERS = frozenset({"const", "volatile"})
LONG_BITS = ctypes.sizeof(ctypes.c_long) * 8

_INT_LITERAL_RE = re.compile(
    r"^(0[xX][0-9a-fA-F]+|0[bB][01]+|0[0-7]*|[1-9][0-9]*)([uUlL]*)$"
)
_CHAR_LITERAL_RE = re.compile(r"^'(\\.[^']*|[^'\\])'$")

_BINARY_PRECEDENCE = {
    "||": 1,
    "&&": 2,
    "|": 3,
    "^": 4,
    "&": 5,
    "==": 6,
    "!=": 6,
    "<": 7,
    "<=": 7,
    ">": 7,
    ">=": 7,
    "<<": 8,
    ">>": 8,
    "+": 9,
    "-": 9,
    "*": 10,
    "/": 10,
    "%": 10,
}


class NotConstant(Exception):
    pass


def parse_int_literal(token: str) -> int:
    match = _INT_LITERAL_RE.match(token)
    if not match:
        raise NotConstant(token)
    digits = match.group(1)
    if digits[:2] in ("0x", "0X"):
        return int(digits, 16)
    if digits[:2] in ("0b", "0B"):
        return int(digits, 2)
    if len(digits) > 1 and digits[0] == "0":
        return int(digits, 8)
    return int(digits)


def _c_divide(left: int, right: int, op: str) -> int:
    if right == 0:
        raise NotConstant("division by zero")
    quotient = abs(left) // abs(right)
    if (left < 0) != (right < 0):
        quotient = -quotient
    if op == "/":
        return quotient
    return left - quotient * right


def _apply_binary(op: str, left: int, right: int) -> int:
    if op in ("/", "%"):
        return _c_divide(left, right, op)
    if op in ("<<", ">>") and right < 0:
        raise NotConstant("negative shift")
    operations = {
        "||": lambda: int(bool(left) or bool(right)),
        "&&": lambda: int(bool(left) and bool(right)),
        "|": lambda: left | right,
        "^": lambda: left ^ right,
        "&": lambda: left & right,
        "==": lambda: int(left == right),
        "!=": lambda: int(left != right),
        "<": lambda: int(left < right),
        "<=": lambda: int(left <= right),
        ">": lambda: int(left > right),
        ">=": lambda: int(left >= right),
        "<<": lambda: left << right,
        ">>": lambda: left >> right,
        "+": lambda: left + right,
        "-": lambda: left - right,
        "*": lambda: left * right,
    }
    return operations[op]()


def keyword_integer_layout(words: list[str]) -> tuple[int, bool]:
    """Bit width and signedness of a cast spelled with C type keywords."""
    words = [word for word in words if word not in C_QUALIFIERS]
    if "_Bool" in words:
        return 1, False
    signed = "unsigned" not in words
    if "char" in words:
        return 8, signed
    if "short" in words:
        return 16, signed
    longs = words.count("long")
    if longs >= 2:
        return 64, signed
    if longs == 1:
        return LONG_BITS, signed
    return 32, signed


def wrap_integer(value: int, bits: int, signed: bool) -> int:
    """Convert value to a C integer of the given width, as a cast does."""
    if bits == 1:
        return int(bool(value))
    value &= (1 << bits) - 1
    if signed and value >> (bits - 1):
        value -= 1 << bits
    return value



class _ConstantExpression:
    """Recursive-descent evaluator for an integer macro body.

    Casts to integer types convert the operand to the cast width and
    signedness. Identifiers resolve through the owning MacroEvaluator.
    Anything else raises NotConstant.
    """

    def __init__(self, tokens: list[str], evaluator: "MacroEvaluator"):
        self._tokens = tokens
        self._pos = 0
        self._evaluator = evaluator

    def evaluate(self) -> int:
        value = self._parse_binary(1)
        if self._pos != len(self._tokens):
            raise NotConstant(" ".join(self._tokens))
        return value

    def _peek(self) -> str | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise NotConstant("unexpected end of expression")
        self._pos += 1
        return token

    def _parse_binary(self, min_prec: int) -> int:
        left = self._parse_unary()
        while True:
            op = self._peek()
            prec = _BINARY_PRECEDENCE.get(op or "")
            if prec is None or prec < min_prec:
                return left
            self._pos += 1
            right = self._parse_binary(prec + 1)
            left = _apply_binary(op, left, right)

    def _cast_length(self) -> int:
        # Token count of "( type words )" at the cursor, or 0 if not a cast.
        end = self._pos + 1
        while end < len(self._tokens) and self._tokens[end] != ")":
            if not self._evaluator.is_type_word(self._tokens[end]):
                return 0
            end += 1
        if end >= len(self._tokens) or end == self._pos + 1:
            return 0
        if end + 1 >= len(self._tokens):
            return 0
        return end - self._pos + 1

    def _parse_unary(self) -> int:
        token = self._take()
        if token == "-":
            return -self._parse_unary()
        if token == "+":
            return self._parse_unary()
        if token == "~":
            return ~self._parse_unary()
        if token == "!":
            return int(not self._parse_unary())
        if token == "(":
            self._pos -= 1
            cast = self._cast_length()
            if cast:
                words = self._tokens[self._pos + 1 : self._pos + cast - 1]
                bits, signed = self._evaluator.cast_layout(words)
                self._pos += cast
                return wrap_integer(self._parse_unary(), bits, signed)
            self._pos += 1
            value = self._parse_binary(1)
            if self._take() != ")":
                raise NotConstant("unbalanced parentheses")
            return value
        if _CHAR_LITERAL_RE.match(token):
            try:
                text = ast.literal_eval(token)
            except (ValueError, SyntaxError) as err:
                raise NotConstant(token) from err
            if len(text) != 1:
                raise NotConstant(token)
            return ord(text)
        if token[0].isdigit():
            return parse_int_literal(token)
        if token.isidentifier():
            value = self._evaluator.value_of(token)
            if isinstance(value, int):
                return value
        raise NotConstant(token)


class MacroEvaluator:
    """Resolve object-like macro bodies to integer or byte-string constants.

    Macros may refer to macros defined later in the translation unit, as the
    preprocessor expands lazily, so every body is collected before evaluation.
    """

    def __init__(
        self,
        macros: dict[str, list[str]],
        known: dict[str, int] | None = None,
        integer_types: dict[str, tuple[int, bool]] | None = None,
    ):
        self._macros = macros
        self._known = dict(known or {})
        self._integer_types = dict(integer_types or {})
        self._memo: dict[str, int | bytes | None] = {}
        self._active: set[str] = set()

    def is_type_word(self, token: str) -> bool:
        return token in C_TYPE_WORDS or token in self._integer_types

    def cast_layout(self, words: list[str]) -> tuple[int, bool]:
        names = [word for word in words if word in self._integer_types]
        if not names:
            return keyword_integer_layout(words)
        if len(names) > 1 or any(
            word not in C_QUALIFIERS for word in words if word not in names
        ):
            raise NotConstant(" ".join(words))
        return self._integer_types[names[0]]

    def value_of(self, name: str) -> int | bytes | None:
        if name in self._memo:
            return self._memo[name]
        if name not in self._macros:
            return self._known.get(name)
        if name in self._active:
            return None
        self._active.add(name)
        try:
            value = self.evaluate(self._macros[name])
        finally:
            self._active.discard(name)
        self._memo[name] = value
        return value

    def evaluate(self, tokens: list[str]) -> int | bytes | None:
        if not tokens:
            return None
        if all(token.startswith('"') for token in tokens):
            try:
                return b"".join(ast.literal_eval("b" + token) for token in tokens)
            except (ValueError, SyntaxError):
                return None
        try:
            return _ConstantExpression(tokens, self).evaluate()
        except NotConstant:
            return None


# ===--- Stage 4: header parsing ---=== #


PRIMITIVE_CTYPES = {
    TypeKind.BOOL: "ctypes.c_bool",
    TypeKind.CHAR_S: "ctypes.c_char",
    TypeKind.CHAR_U: "ctypes.c_char",
    TypeKind.SCHAR: "ctypes.c_byte",
    TypeKind.UCHAR: "ctypes.c_ubyte",
    TypeKind.SHORT: "ctypes.c_short",
    TypeKind.USHORT: "ctypes.c_ushort",
    TypeKind.INT: "ctypes.c_int",
    TypeKind.UINT: "ctypes.c_uint",
    TypeKind.LONG: "ctypes.c_long",
    TypeKind.ULONG: "ctypes.c_ulong",
    TypeKind.LONGLONG: "ctypes.c_longlong",
    TypeKind.ULONGLONG: "ctypes.c_ulonglong",
    TypeKind.FLOAT: "ctypes.c_float",
    TypeKind.DOUBLE: "ctypes.c_double",
    TypeKind.LONGDOUBLE: "ctypes.c_longdouble",
    TypeKind.WCHAR: "ctypes.c_wchar",
}

INTEGER_SIGNEDNESS = {
    TypeKind.CHAR_S: True,
    TypeKind.CHAR_U: False,
    TypeKind.SCHAR: True,
    TypeKind.UCHAR: False,
    TypeKind.SHORT: True,
    TypeKind.USHORT: False,
    TypeKind.INT: True,
    TypeKind.UINT: False,
    TypeKind.LONG: True,
    TypeKind.ULONG: False,
    TypeKind.LONGLONG: True,
    TypeKind.ULONGLONG: False,
    TypeKind.INT128: True,
    TypeKind.UINT128: False,
    TypeKind.WCHAR: True,
}


def integer_layout(t: Type) -> tuple[int, bool] | None:
    """Bit width and signedness of an integer type, or None for other types."""
    t = t.get_canonical()
    if t.kind == TypeKind.ENUM:
        t = t.get_declaration().enum_type.get_canonical()
    if t.kind == TypeKind.BOOL:
        return 1, False
    if t.kind not in INTEGER_SIGNEDNESS:
        return None
    return t.get_size() * 8, INTEGER_SIGNEDNESS[t.kind]


RECORD_KINDS = {CursorKind.STRUCT_DECL: "struct", CursorKind.UNION_DECL: "union"}
FUNCTION_TYPE_KINDS = (TypeKind.FUNCTIONPROTO, TypeKind.FUNCTIONNOPROTO)
ARRAY_TYPE_KINDS = (TypeKind.CONSTANTARRAY, TypeKind.INCOMPLETEARRAY)
PYTHON_RESERVED = {
    "False", "None", "True", "and", "as", "assert", "async", "await", "break",
    "class", "continue", "def", "del", "elif", "else", "except", "finally",
    "for", "from", "global", "if", "import", "in", "is", "lambda", "nonlocal",
    "not", "or", "pass", "raise", "return", "try", "while", "with", "yield",
    "ctypes",
}  # fmt: skip


def py_name(name: str) -> str:
    if name in PYTHON_RESERVED:
        return f"{name}_"
    return name


def generator_args(include_root: Path) -> list[str]:
    return ["-x", "c", "-std=c99", "-ffreestanding", f"-I{include_root}"]


def _format_diagnostic(diagnostic: Diagnostic) -> str:
    location = diagnostic.location
    if location.file is None:
        return diagnostic.spelling
    return f"{location.file.name}:{location.line}:{location.column}: {diagnostic.spelling}"


def parse_umbrella_header(header: Path, include_root: Path) -> TranslationUnit:
    """Parse the umbrella header against the patched include root.

    Raises:
        BuildError: BINDGEN when libclang is unavailable, the header cannot be
            loaded, or clang reports any error (malformed header, unresolved
            include).
    """
    try:
        index = Index.create()
        tu = index.parse(
            str(header),
            args=generator_args(include_root),
            options=(
                TranslationUnit.PARSE_DETAILED_PROCESSING_RECORD
                | TranslationUnit.PARSE_SKIP_FUNCTION_BODIES
            ),
        )
    except LibclangError as err:
        raise BuildError(
            "BINDGEN",
            f"libclang is not available: {err}",
            hint="Install the libclang package.",
        ) from err
    except TranslationUnitLoadError as err:
        raise BuildError(
            "BINDGEN", f"Could not parse umbrella header: {err}", path=header
        ) from err

    errors = [d for d in tu.diagnostics if d.severity >= Diagnostic.Error]
    if errors:
        details = "\n".join(_format_diagnostic(d) for d in errors[:5])
        raise BuildError(
            "BINDGEN",
            f"{len(errors)} error(s) parsing umbrella header:\n{details}",
            path=header,
        )
    return tu


def _has_file(cursor: Cursor) -> bool:
    # Built-in and command-line definitions have no file or a "<...>" one.
    source = cursor.location.file
    return source is not None and not source.name.startswith("<")


def _is_unnamed(cursor: Cursor) -> bool:
    spelling = cursor.spelling
    return not spelling or "(" in spelling or " " in spelling


def _decl_key(cursor: Cursor) -> int:
    return cursor.canonical.hash


def _strip_elaborated(t: Type) -> Type:
    while t.kind == TypeKind.ELABORATED:
        t = t.get_named_type()
    return t


def _inner_record(t: Type) -> Cursor | None:
    # Record declared directly in a field's type, through pointers and arrays
    # but not through typedefs.
    t = _strip_elaborated(t)
    while t.kind in ARRAY_TYPE_KINDS or t.kind == TypeKind.POINTER:
        if t.kind == TypeKind.POINTER:
            t = _strip_elaborated(t.get_pointee())
        else:
            t = _strip_elaborated(t.element_type)
    if t.kind == TypeKind.RECORD:
        return t.get_declaration()
    return None


class UnsupportedDeclaration(Exception):
    """A declaration the ctypes mapping cannot express."""


class BindingCollector:
    """Walk a translation unit and accumulate a BindingSet.

    Declarations are kept in source order and merged by name. Records are
    registered as opaque on first reference and completed when their
    definition is walked.
    """

    def __init__(self) -> None:
        self._tag_names: dict[int, str] = {}
        self._records: dict[str, RecordDecl] = {}
        self._enums: list[EnumDecl] = []
        self._enum_names: dict[int, str | None] = {}
        self._typedefs: dict[str, TypedefDecl] = {}
        self._functions: dict[str, FunctionDecl] = {}
        self._macros: dict[str, list[str]] = {}
        self._integer_types: dict[str, tuple[int, bool]] = {}
        self._enum_values: dict[str, int] = {}
        self._position = 0

    # --- naming ---

    def _collect_typedef_tags(self, cursors: list[Cursor]) -> None:
        for cursor in cursors:
            if cursor.kind != CursorKind.TYPEDEF_DECL or not _has_file(cursor):
                continue
            underlying = _strip_elaborated(cursor.underlying_typedef_type)
            if underlying.kind not in (TypeKind.RECORD, TypeKind.ENUM):
                continue
            decl = underlying.get_declaration()
            if _is_unnamed(decl):
                self._tag_names.setdefault(_decl_key(decl), cursor.spelling)

    def _tag_name(self, decl: Cursor) -> str | None:
        key = _decl_key(decl)
        if key in self._tag_names:
            return self._tag_names[key]
        if _is_unnamed(decl):
            return None
        return decl.spelling

    def _next_position(self) -> int:
        self._position += 1
        return self._position

    # --- type mapping ---

    def _ensure_record(self, decl: Cursor) -> str:
        name = self._tag_name(decl)
        if name is None:
            raise UnsupportedDeclaration(
                "unnamed record used outside a typedef or field"
            )
        if name not in self._records:
            kind = RECORD_KINDS.get(decl.kind, "struct")
            self._records[name] = RecordDecl(name=name, kind=kind, fields=(), opaque=True)
        return name

    def _add_value_records(self, t: Type, deps: set[str]) -> None:
        t = _strip_elaborated(t.get_canonical())
        while t.kind in ARRAY_TYPE_KINDS:
            t = _strip_elaborated(t.element_type.get_canonical())
        if t.kind == TypeKind.RECORD:
            deps.add(f"layout:{self._ensure_record(t.get_declaration())}")

    def _enum_ctype(self, decl: Cursor) -> str:
        name = self._enum_names.get(_decl_key(decl))
        if name:
            return py_name(name)
        return self._integer_ctype(decl.enum_type)

    def _integer_ctype(self, t: Type) -> str:
        canonical = t.get_canonical()
        if canonical.kind in PRIMITIVE_CTYPES:
            return PRIMITIVE_CTYPES[canonical.kind]
        return "ctypes.c_int"

    def _function_ctype(self, t: Type, deps: set[str]) -> str:
        restype = self.ctype(t.get_result(), deps, by_value=True)
        args = []
        if t.kind == TypeKind.FUNCTIONPROTO:
            args = [self.ctype(a, deps, by_value=True) for a in t.argument_types()]
        return f"ctypes.CFUNCTYPE({', '.join([restype, *args])})"

    def _pointer_ctype(self, pointee: Type, deps: set[str]) -> str:
        canonical = pointee.get_canonical()
        if canonical.kind == TypeKind.VOID:
            return "ctypes.c_void_p"
        if canonical.kind in (TypeKind.CHAR_S, TypeKind.CHAR_U):
            return "ctypes.c_char_p"
        if canonical.kind in FUNCTION_TYPE_KINDS:
            function = _strip_elaborated(pointee)
            while function.kind == TypeKind.TYPEDEF:
                function = _strip_elaborated(
                    function.get_declaration().underlying_typedef_type
                )
            if function.kind not in FUNCTION_TYPE_KINDS:
                function = canonical
            return self._function_ctype(function, deps)
        return f"ctypes.POINTER({self.ctype(pointee, deps, by_value=False)})"

    def ctype(self, t: Type, deps: set[str], by_value: bool) -> str:
        """Return the ctypes expression for t.

        Names that must exist before the expression is evaluated are added to
        deps: typedef aliases always, record layouts only when the record is
        used by value (arrays, fields, function parameters).
        """
        kind = t.kind
        if kind == TypeKind.ELABORATED:
            return self.ctype(t.get_named_type(), deps, by_value)
        if kind == TypeKind.TYPEDEF:
            name = t.get_declaration().spelling
            if name in self._typedefs:
                deps.add(f"typedef:{name}")
                if by_value:
                    self._add_value_records(t, deps)
                return py_name(name)
            underlying = t.get_declaration().underlying_typedef_type
            return self.ctype(underlying, deps, by_value)
        if kind == TypeKind.VOID:
            return "None"
        if kind in PRIMITIVE_CTYPES:
            return PRIMITIVE_CTYPES[kind]
        if kind == TypeKind.POINTER:
            return self._pointer_ctype(t.get_pointee(), deps)
        if kind == TypeKind.CONSTANTARRAY:
            element = self.ctype(t.element_type, deps, by_value=True)
            return f"({element} * {t.element_count})"
        if kind == TypeKind.INCOMPLETEARRAY:
            element = self.ctype(t.element_type, deps, by_value=True)
            return f"({element} * 0)"
        if kind == TypeKind.RECORD:
            name = self._ensure_record(t.get_declaration())
            if by_value:
                deps.add(f"layout:{name}")
            return py_name(name)
        if kind == TypeKind.ENUM:
            return self._enum_ctype(t.get_declaration())
        if kind in FUNCTION_TYPE_KINDS:
            return self._function_ctype(t, deps)
        canonical = t.get_canonical()
        if canonical.kind != kind:
            return self.ctype(canonical, deps, by_value)
        size = t.get_size()
        if size > 0:
            return f"(ctypes.c_ubyte * {size})"
        raise UnsupportedDeclaration(f"unsupported type {t.spelling!r}")

    # --- declarations ---

    def _define_enum(self, cursor: Cursor) -> None:
        key = _decl_key(cursor)
        if key in self._enum_names:
            return
        name = self._tag_name(cursor)
        self._enum_names[key] = name
        variants = []
        for child in cursor.get_children():
            if child.kind == CursorKind.ENUM_CONSTANT_DECL:
                variants.append((child.spelling, child.enum_value))
                self._enum_values[child.spelling] = child.enum_value
        self._enums.append(
            EnumDecl(
                name=name,
                int_type=self._integer_ctype(cursor.enum_type),
                variants=tuple(variants),
            )
        )

    def _record_pack(self, cursor: Cursor, field_cursors: list[Cursor]) -> int | None:
        record_align = cursor.type.get_align()
        field_aligns = [c.type.get_align() for c in field_cursors]
        natural = max((a for a in field_aligns if a > 0), default=0)
        if 0 < record_align < natural:
            return record_align
        return None

    def _define_record(self, cursor: Cursor, name: str) -> None:
        existing = self._records.get(name)
        if existing is not None and not existing.opaque:
            return
        self._tag_names[_decl_key(cursor)] = name
        if existing is None:
            self._records[name] = RecordDecl(
                name=name, kind=RECORD_KINDS[cursor.kind], fields=(), opaque=True
            )

        children = list(cursor.get_children())
        nested = {
            _decl_key(c): c
            for c in children
            if c.kind in RECORD_KINDS and c.is_definition()
        }
        field_cursors = [c for c in children if c.kind == CursorKind.FIELD_DECL]
        referenced: set[int] = set()
        for field in field_cursors:
            inner = _inner_record(field.type)
            if inner is not None:
                referenced.add(_decl_key(inner))

        fields: list[FieldDecl] = []
        anonymous: list[str] = []
        deps: set[str] = set()
        for child in children:
            if child.kind == CursorKind.ENUM_DECL and child.is_definition():
                self._define_enum(child)
            elif child.kind in RECORD_KINDS and child.is_definition():
                key = _decl_key(child)
                if not _is_unnamed(child) or key in self._tag_names:
                    self._define_record(child, self._tag_name(child))
                elif key not in referenced:
                    member = f"_anon{len(anonymous)}"
                    nested_name = f"{name}_{member}"
                    self._define_record(child, nested_name)
                    anonymous.append(member)
                    fields.append(FieldDecl(member, py_name(nested_name)))
                    deps.add(f"layout:{nested_name}")
            elif child.kind == CursorKind.FIELD_DECL:
                inner = _inner_record(child.type)
                if inner is not None and _is_unnamed(inner):
                    inner_key = _decl_key(inner)
                    if inner_key not in self._tag_names:
                        nested_name = f"{name}_{child.spelling}"
                        self._define_record(nested.get(inner_key, inner), nested_name)
                field_name = py_name(child.spelling or f"_unnamed{len(fields)}")
                ctype = self.ctype(child.type, deps, by_value=True)
                width = child.get_bitfield_width() if child.is_bitfield() else None
                fields.append(FieldDecl(field_name, ctype, width))

        deps.discard(f"layout:{name}")
        self._records[name] = RecordDecl(
            name=name,
            kind=RECORD_KINDS[cursor.kind],
            fields=tuple(fields),
            opaque=False,
            pack=self._record_pack(cursor, field_cursors),
            anonymous=tuple(anonymous),
            requires=frozenset(deps),
            position=self._next_position(),
        )

    def _define_typedef(self, cursor: Cursor) -> None:
        name = cursor.spelling
        layout = integer_layout(cursor.underlying_typedef_type)
        if layout is not None:
            self._integer_types.setdefault(name, layout)
        if name in self._typedefs:
            return
        deps: set[str] = set()
        target = self.ctype(cursor.underlying_typedef_type, deps, by_value=False)
        if target == py_name(name):
            return
        self._typedefs[name] = TypedefDecl(
            name=name,
            target=target,
            requires=frozenset(deps),
            position=self._next_position(),
        )

    def _define_function(self, cursor: Cursor) -> None:
        name = cursor.spelling
        if name in self._functions or cursor.storage_class == StorageClass.STATIC:
            return
        deps: set[str] = set()
        function_type = cursor.type
        if function_type.kind not in FUNCTION_TYPE_KINDS:
            function_type = function_type.get_canonical()
        restype = self.ctype(cursor.result_type, deps, by_value=True)
        argtypes: list[str] = []
        variadic = False
        if function_type.kind == TypeKind.FUNCTIONPROTO:
            argtypes = [
                self.ctype(a, deps, by_value=True) for a in function_type.argument_types()
            ]
            variadic = function_type.is_function_variadic()
        self._functions[name] = FunctionDecl(
            name=name, restype=restype, argtypes=tuple(argtypes), variadic=variadic
        )

    def _record_macro(self, cursor: Cursor) -> None:
        tokens = list(cursor.get_tokens())
        if len(tokens) < 2:
            return
        # A function-like macro has "(" directly after its name.
        name, first = tokens[0], tokens[1]
        adjacent = first.extent.start.offset == name.extent.end.offset
        if first.spelling == "(" and adjacent:
            return
        self._macros[cursor.spelling] = [token.spelling for token in tokens[1:]]

    def visit(self, cursor: Cursor) -> None:
        kind = cursor.kind
        if kind == CursorKind.MACRO_DEFINITION:
            self._record_macro(cursor)
        elif kind == CursorKind.FUNCTION_DECL:
            self._define_function(cursor)
        elif kind in RECORD_KINDS:
            name = self._tag_name(cursor)
            if name is None:
                return
            if cursor.is_definition():
                self._define_record(cursor, name)
            else:
                self._ensure_record(cursor)
        elif kind == CursorKind.ENUM_DECL and cursor.is_definition():
            self._define_enum(cursor)
        elif kind == CursorKind.TYPEDEF_DECL:
            self._define_typedef(cursor)

    def collect(self, tu: TranslationUnit) -> BindingSet:
        cursors = [c for c in tu.cursor.get_children() if _has_file(c)]
        self._collect_typedef_tags(cursors)
        for cursor in cursors:
            self.visit(cursor)
        return self.build()

    def _constants(self) -> list[ConstantDecl]:
        evaluator = MacroEvaluator(
            self._macros, self._enum_values, self._integer_types
        )
        constants = []
        for name in self._macros:
            value = evaluator.value_of(name)
            if value is not None:
                constants.append(ConstantDecl(name=name, value=value))
        return constants

    def build(self) -> BindingSet:
        records = tuple(self._records.values())
        typedefs = tuple(self._typedefs.values())
        return BindingSet(
            constants=tuple(self._constants()),
            enums=tuple(self._enums),
            records=records,
            typedefs=typedefs,
            functions=tuple(self._functions.values()),
            statement_order=order_statements(records, typedefs),
        )


def order_statements(
    records: tuple[RecordDecl, ...], typedefs: tuple[TypedefDecl, ...]
) -> tuple[str, ...]:
    """Order typedef aliases and record layouts so dependencies come first.

    Ties are broken by source position, so independent declarations keep
    header order.

    Raises:
        BuildError: BINDGEN on a dependency cycle.
    """
    nodes: dict[str, tuple[int, frozenset[str]]] = {}
    for record in records:
        if not record.opaque:
            nodes[f"layout:{record.name}"] = (record.position, record.requires)
    for typedef in typedefs:
        nodes[f"typedef:{typedef.name}"] = (typedef.position, typedef.requires)

    in_degree = {key: 0 for key in nodes}
    dependents: dict[str, list[str]] = {key: [] for key in nodes}
    for key, (_position, requires) in nodes.items():
        for dep in requires:
            if dep in nodes and dep != key:
                dependents[dep].append(key)
                in_degree[key] += 1

    ready = [(nodes[key][0], key) for key, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)
    result: list[str] = []
    while ready:
        _position, key = heapq.heappop(ready)
        result.append(key)
        for dependent in dependents[key]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (nodes[dependent][0], dependent))

    if len(result) != len(nodes):
        remaining = sorted(set(nodes) - set(result))
        raise BuildError(
            "BINDGEN", f"Dependency cycle between declarations: {remaining}"
        )
    return tuple(result)


def extract_binding_set(tu: TranslationUnit) -> BindingSet:
    try:
        return BindingCollector().collect(tu)
    except UnsupportedDeclaration as err:
        raise BuildError("BINDGEN", f"Cannot express declaration: {err}") from err


def generate_binding_set(umbrella_header: Path, include_root: Path) -> BindingSet:
    tu = parse_umbrella_header(umbrella_header, include_root)
    return extract_binding_set(tu)


# ===--- Stage 5: serialization ---=== #


PREAMBLE = '''\
# Generated by build_acpica.py. Do not edit; rerun the build instead.
# ruff: noqa: D100, D101, D103, E501, F401, F811, N801, N802, N815, N816
"""Freestanding ctypes declarations for the ACPICA interpreter.

No shared library is loaded and nothing is initialised at import time.
Function prototypes are bound by the caller, for example
``AcpiTerminate(("AcpiTerminate", lib))``.
"""

import ctypes
'''


def generate_constant_lines(constants: tuple[ConstantDecl, ...]) -> list[str]:
    return [f"{py_name(c.name)} = {c.value!r}" for c in constants]


def generate_enum_lines(enums: tuple[EnumDecl, ...]) -> list[str]:
    lines: list[str] = []
    for enum in enums:
        if enum.name:
            lines.append(f"{py_name(enum.name)} = {enum.int_type}")
        for variant, value in enum.variants:
            lines.append(f"{py_name(variant)} = {value}")
    return lines


def generate_record_class_lines(record: RecordDecl) -> list[str]:
    base = "ctypes.Union" if record.kind == "union" else "ctypes.Structure"
    lines = [f"class {py_name(record.name)}({base}):"]
    if record.pack is not None:
        lines.append('    _layout_ = "ms"')
        lines.append(f"    _pack_ = {record.pack}")
    if record.anonymous:
        names = "".join(f'"{name}", ' for name in record.anonymous)
        lines.append(f"    _anonymous_ = ({names.rstrip()})")
    if len(lines) == 1:
        lines.append("    pass")
    return lines


def generate_layout_lines(record: RecordDecl) -> list[str]:
    if not record.fields:
        return [f"{py_name(record.name)}._fields_ = []"]
    lines = [f"{py_name(record.name)}._fields_ = ["]
    for field in record.fields:
        if field.bit_width is not None:
            lines.append(f'    ("{field.name}", {field.ctype}, {field.bit_width}),')
        else:
            lines.append(f'    ("{field.name}", {field.ctype}),')
    lines.append("]")
    return lines


def generate_function_lines(functions: tuple[FunctionDecl, ...]) -> list[str]:
    lines = []
    for fn in functions:
        line = f"{py_name(fn.name)} = ctypes.CFUNCTYPE({', '.join([fn.restype, *fn.argtypes])})"
        if fn.variadic:
            line += "  # variadic"
        lines.append(line)
    return lines


def serialize_binding_set(binding_set: BindingSet) -> str:
    """Render the preamble and every declaration as module source.

    Section order: constants, enums, record classes, then typedef aliases and
    record layouts interleaved in statement_order, then function prototypes.
    Empty sections are omitted.
    """
    records = {r.name: r for r in binding_set.records}
    typedefs = {t.name: t for t in binding_set.typedefs}

    sections: list[list[str]] = [
        generate_constant_lines(binding_set.constants),
        generate_enum_lines(binding_set.enums),
    ]

    class_lines: list[str] = []
    for record in binding_set.records:
        if class_lines:
            class_lines.extend(["", ""])
        class_lines.extend(generate_record_class_lines(record))
    sections.append(class_lines)

    statement_lines: list[str] = []
    for key in binding_set.statement_order:
        kind, _, name = key.partition(":")
        if kind == "typedef":
            typedef = typedefs[name]
            statement_lines.append(f"{py_name(typedef.name)} = {typedef.target}")
        else:
            statement_lines.extend(generate_layout_lines(records[name]))
    sections.append(statement_lines)

    sections.append(generate_function_lines(binding_set.functions))

    parts = [PREAMBLE.rstrip("\n")]
    parts.extend("\n".join(section) for section in sections if section)
    return "\n\n\n".join(parts) + "\n"


# ===--- Stage 5/6: atomic publish and formatting ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of publishing the binding module.

    Attributes:
        filename: Destination file name, e.g. "bindings.py".
        path: Absolute path of the published file.
        line_count: Number of newline characters in the published content.
        byte_count: Size of the published file in bytes.
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def write_staging_module(destination: Path, content: str) -> Path:
    """Write content to a staging file beside destination.

    Raises:
        BuildError: REWRITE if the directory or file cannot be written.
    """
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, staging_name = tempfile.mkstemp(
            prefix=f".{destination.stem}-",
            suffix=destination.suffix,
            dir=destination.parent,
        )
    except OSError as err:
        raise BuildError(
            "REWRITE",
            f"Could not create staging file: {err.strerror or err}",
            path=destination,
        ) from err

    staging = Path(staging_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
            handle.write(content)
    except OSError as err:
        staging.unlink(missing_ok=True)
        raise BuildError(
            "REWRITE",
            f"Could not write staging file: {err.strerror or err}",
            path=staging,
        ) from err
    return staging


def run_formatter(path: Path, command: tuple[str, ...]) -> None:
    """Run the source formatter over path in place.

    Raises:
        BuildError: FORMAT when the formatter is missing or exits non-zero.
    """
    _run_tool([*command, str(path)], "FORMAT", path)


def _published_mode(destination: Path) -> int:
    # Keep the mode of the module being replaced; a new one gets the umask.
    if destination.exists():
        return stat.S_IMODE(destination.stat().st_mode)
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def commit_module(staging: Path, destination: Path) -> FileWriteResult:
    try:
        os.chmod(staging, _published_mode(destination))
        os.replace(staging, destination)

        content = destination.read_bytes()
    except OSError as err:
        raise BuildError(
            "REWRITE",
            f"Could not publish binding module: {err.strerror or err}",
            path=destination,
        ) from err
    resolved = destination.resolve()
    return FileWriteResult(
        filename=destination.name,
        path=resolved,
        line_count=content.count(b"\n"),
        byte_count=len(content),
    )


def publish_bindings(
    destination: Path, content: str, format_command: tuple[str, ...] | None
) -> FileWriteResult:
    """Replace destination with content, formatted, in one rename.

    The previous module stays intact until the new one is fully written and
    formatted. The staging file never outlives this call.
    """
    staging = write_staging_module(destination, content)
    try:
        if format_command is not None:
            print(f"Formatting: {' '.join(format_command)}")
            run_formatter(staging, format_command)
        return commit_module(staging, destination)
    finally:
        staging.unlink(missing_ok=True)


# ===--- Pipeline ---=== #


@dataclass(frozen=True)
class BuildResult:
    archive: CompiledArchive
    bindings: FileWriteResult
    binding_set: BindingSet


def run_build(config: BuildConfig, profile: VendorProfile | None = None) -> BuildResult:
    """Run every stage in order: stage -> patch -> compile -> generate -> publish.

    The workspace is removed when this returns or raises. Any failure aborts
    the run; nothing is retried.

    Raises:
        ConfigError: The vendor profile is unreadable or invalid.
        BuildError: Any stage failure.
    """
    if profile is None:
        profile = load_vendor_profile(config.profile)
    toolchain = resolve_toolchain()

    print(f"Staging: {config.vendor_source}")
    with Workspace.create(config.workspace_dir) as workspace:
        stage_source_tree(workspace, config.vendor_source, config.shim_header, profile)

        print(f"Patching: {profile.environment_header}")
        patch_environment_header(workspace, profile)

        print(f"Compiling: {workspace.components_root.name}")
        archive = compile_components(
            workspace, toolchain, profile, config.out_dir, config.debug_output
        )
        print(f"  Archive: {archive.path}")
        print(f"  Link: {' '.join(archive.link_args)}")

        print(f"Generating: {config.umbrella_header.name}")
        binding_set = generate_binding_set(
            config.umbrella_header, workspace.include_root
        )
        content = serialize_binding_set(binding_set)

        print(f"Writing: {config.output}")
        written = publish_bindings(config.output, content, config.format_command)

    result = BuildResult(archive=archive, bindings=written, binding_set=binding_set)
    print_build_summary(build_summary(result, profile))
    return result


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class BuildSummary:
    archive_path: str
    object_count: int
    excluded_components: tuple[str, ...]
    link_args: tuple[str, str]
    bindings_path: str
    bindings_lines: int
    counts: tuple[tuple[str, int], ...]


def build_summary(result: BuildResult, profile: VendorProfile) -> BuildSummary:
    binding_set = result.binding_set
    return BuildSummary(
        archive_path=str(result.archive.path),
        object_count=len(result.archive.sources),
        excluded_components=tuple(sorted(profile.excluded_components)),
        link_args=result.archive.link_args,
        bindings_path=str(result.bindings.path),
        bindings_lines=result.bindings.line_count,
        counts=(
            ("Constants:", len(binding_set.constants)),
            ("Enums:", len(binding_set.enums)),
            ("Structs:", len(binding_set.structs)),
            ("Unions:", len(binding_set.unions)),
            ("Type aliases:", len(binding_set.typedefs)),
            ("Functions:", len(binding_set.functions)),
        ),
    )


def format_build_summary(summary: BuildSummary) -> str:
    lines: list[str] = []
    lines.append("ACPICA build complete:")
    lines.append("")
    lines.append(f"  Archive:    {summary.archive_path} ({summary.object_count} objects)")
    lines.append(f"  Excluded:   {', '.join(summary.excluded_components) or 'none'}")
    lines.append(f"  Link:       {' '.join(summary.link_args)}")
    lines.append(
        f"  Bindings:   {summary.bindings_path} ({summary.bindings_lines:,} lines)"
    )
    lines.append("")
    lines.append("  Declarations generated:")
    for label, count in summary.counts:
        lines.append(f"    {label:<14}{count:>6}")
    lines.append("")
    return "\n".join(lines)


def print_build_summary(summary: BuildSummary) -> None:
    print(format_build_summary(summary), end="")


# ===--- Main ---=== #


def main():
    try:
        config = build_config()
        profile = load_vendor_profile(config.profile)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        run_build(config, profile)
    except BuildError as err:
        print(f"Build error [{err.stage}]: {err.message}")
        if err.path is not None:
            print(f"Path: {err.path}")
        if err.hint:
            print(f"Hint: {err.hint}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()

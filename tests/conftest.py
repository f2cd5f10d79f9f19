import argparse
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

PROJECT_DIR = Path(__file__).resolve().parent.parent
if str(PROJECT_DIR) not in sys.path:
    sys.path.insert(0, str(PROJECT_DIR))

import build_acpica  # noqa: E402

ACENV_H = """\
#ifndef __ACENV_H__
#define __ACENV_H__

#if defined(_LINUX) || defined(__linux__)
#include "aclinux.h"

#elif defined(_APPLE) || defined(__APPLE__)
#include "acmacosx.h"

#endif

#endif
"""

SHIM_H = """\
#ifndef __ACRUST_H__
#define __ACRUST_H__
#define ACPI_MACHINE_WIDTH 64
#endif
"""

ACPI_H = """\
#ifndef __ACPI_H__
#define __ACPI_H__
#include "platform/acenv.h"

typedef unsigned char UINT8;
typedef unsigned int UINT32;
typedef UINT32 ACPI_STATUS;

#define AE_OK (ACPI_STATUS) 0x0000

struct acpi_table_header {
    char Signature[4];
    UINT32 Length;
};

ACPI_STATUS AcpiInitializeSubsystem(void);
#endif
"""

COMPONENT_FILES = {
    "debugger": ("dbcmds.c", "dbdisply.c"),
    "disassembler": ("dmbuffer.c",),
    "dispatcher": ("dsargs.c", "dscontrol.c"),
    "utilities": ("utglobal.c",),
}


@pytest.fixture
def profile() -> build_acpica.VendorProfile:
    return build_acpica.load_vendor_profile(build_acpica.DEFAULT_PROFILE)


@pytest.fixture
def make_vendor_tree(tmp_path: Path) -> Callable[..., Path]:
    def _make_vendor_tree(
        *,
        acenv: str = ACENV_H,
        acpi: str = ACPI_H,
        components: dict[str, tuple[str, ...]] | None = None,
    ) -> Path:
        source = tmp_path / "acpica" / "source"
        platform = source / "include" / "platform"
        platform.mkdir(parents=True)
        (platform / "acenv.h").write_text(acenv, encoding="utf-8")
        (source / "include" / "acpi.h").write_text(acpi, encoding="utf-8")
        layout = COMPONENT_FILES if components is None else components
        for component, files in layout.items():
            component_dir = source / "components" / component
            component_dir.mkdir(parents=True)
            for name in files:
                (component_dir / name).write_text(f"/* {name} */\n", encoding="utf-8")
        return source

    return _make_vendor_tree


@pytest.fixture
def shim_header(tmp_path: Path) -> Path:
    shim = tmp_path / "c_headers" / "acrust.h"
    shim.parent.mkdir(parents=True, exist_ok=True)
    shim.write_text(SHIM_H, encoding="utf-8")
    return shim


@pytest.fixture
def umbrella_header(tmp_path: Path) -> Path:
    wrapper = tmp_path / "c_headers" / "wrapper.h"
    wrapper.parent.mkdir(parents=True, exist_ok=True)
    wrapper.write_text("#include <acpi.h>\n", encoding="utf-8")
    return wrapper


@pytest.fixture
def write_header(tmp_path: Path) -> Callable[[str], Path]:
    def _write_header(text: str, name: str = "umbrella.h") -> Path:
        header = tmp_path / "headers" / name
        header.parent.mkdir(parents=True, exist_ok=True)
        header.write_text(text, encoding="utf-8")
        return header

    return _write_header


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        vendor = tmp_path / "vendor"
        vendor.mkdir(exist_ok=True)
        headers = tmp_path / "inputs"
        headers.mkdir(exist_ok=True)
        shim = headers / "acrust.h"
        shim.write_text(SHIM_H, encoding="utf-8")
        wrapper = headers / "wrapper.h"
        wrapper.write_text("#include <acpi.h>\n", encoding="utf-8")

        base_args: dict[str, object] = {
            "vendor_source": vendor,
            "shim_header": shim,
            "umbrella_header": wrapper,
            "profile": build_acpica.DEFAULT_PROFILE,
            "output": tmp_path / "out" / "bindings.py",
            "out_dir": tmp_path / "build",
            "workspace_dir": None,
            "debug_output": False,
            "formatter": None,
            "skip_format": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args

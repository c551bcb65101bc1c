import argparse
import ctypes
import glob
import os
import platform
import re
import shutil
import subprocess
import sys
import tempfile
import time
import traceback
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests
from bs4 import BeautifulSoup

try:  # Windows-only
    import winreg
except ImportError:  # pragma: no cover - exercised on non-Windows only
    winreg = None  # type: ignore[assignment]


TOOL_NAME = "winget-installer"
TOOL_VERSION = "1.0.0"
SELF_REPO_OWNER = "winget-installer"
SELF_REPO_NAME = TOOL_NAME
ISSUES_URL = f"https://github.com/{SELF_REPO_OWNER}/{SELF_REPO_NAME}/issues"

CREATE_NO_WINDOW = 0x08000000
WM_SETTINGCHANGE = 0x001A
SMTO_ABORTIFHUNG = 0x0002
MIN_WINDOWS_BUILD = 17763

APP_DIR_NAME = "WingetInstaller"
LAST_RUN_LOG_FILE = "last_run.log"
HTTP_TIMEOUT_SECONDS = 60
DOWNLOAD_CHUNK_SIZE = 1024 * 256

GITHUB_API_URL = "https://api.github.com"
STORE_LOOKUP_URL = "https://store.rg-adguard.net/api/GetFiles"
STORE_RING = "RP"
STORE_LANG = "en-US"

VCLIBS_FAMILY_NAME = "Microsoft.VCLibs.140.00.UWPDesktop_8wekyb3d8bbwe"
VCLIBS_FALLBACK_URL = "https://aka.ms/Microsoft.VCLibs.{arch}.14.00.Desktop.appx"
UI_XAML_FAMILY_NAME = "Microsoft.UI.Xaml.2.8_8wekyb3d8bbwe"
UI_XAML_NUGET_URL = "https://www.nuget.org/api/v2/package/Microsoft.UI.Xaml/{version}"
UI_XAML_NUGET_VERSION = "2.8.6"
UI_XAML_ARCHIVE_LAYOUT = "tools/AppX/{arch}/Release"

WINGET_REPO_OWNER = "microsoft"
WINGET_REPO_NAME = "winget-cli"
WINGET_BUNDLE_PATTERN = r"\.msixbundle$"
WINGET_LICENSE_PATTERN = r"License1\.xml$"

WINDOWS_APPS_DIR = r"%LOCALAPPDATA%\Microsoft\WindowsApps"
PATH_SCOPES = ("user", "machine")
USER_ENVIRONMENT_KEY = r"Environment"
MACHINE_ENVIRONMENT_KEY = r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"


class InstallerError(RuntimeError):
    pass


class UnknownArchitectureError(InstallerError):
    pass


class UnsupportedSystemError(InstallerError):
    pass


class ResolutionError(InstallerError):
    """No download URL could be resolved for a package."""


class InstallFailure(InstallerError):
    def __init__(self, label: str, result: "InstallAttemptResult") -> None:
        super().__init__(f"{label} installation failed: {result.reason}")
        self.label = label
        self.result = result


class Architecture(Enum):
    X86 = "x86"
    X64 = "x64"
    ARM = "arm"
    ARM64 = "arm64"


# Win32_Processor.Architecture values.
CPU_ARCHITECTURE_CODES: dict[int, Architecture] = {
    0: Architecture.X86,
    5: Architecture.ARM,
    9: Architecture.X64,
    12: Architecture.ARM64,
}


class ErrorCode(Enum):
    HIGHER_VERSION_INSTALLED = "0x80073D06"
    SAME_VERSION_INSTALLED = "0x80073CF0"
    RESOURCES_IN_USE = "0x80073D02"
    CONNECTIVITY = "connectivity"
    UNKNOWN = "unknown"


class Outcome(Enum):
    SUCCESS = "success"
    BENIGN = "benign"
    RECOVERABLE = "recoverable"
    FATAL = "fatal"


@dataclass(frozen=True)
class InstallSignal:
    code: ErrorCode
    message: str


@dataclass(frozen=True)
class InstallAttemptResult:
    outcome: Outcome
    reason: str = ""
    guidance: tuple[str, ...] = ()
    signal: Optional[InstallSignal] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.BENIGN)


SUCCESS_RESULT = InstallAttemptResult(Outcome.SUCCESS)

CONNECTIVITY_PHRASES = (
    "unable to connect to the remote server",
    "the remote name could not be resolved",
)
HRESULT_PATTERN = re.compile(r"0x[0-9A-Fa-f]{8}")

# Checked in order; the first matching code wins.
CLASSIFICATION_TABLE: tuple[tuple[ErrorCode, Outcome, str, tuple[str, ...]], ...] = (
    (
        ErrorCode.HIGHER_VERSION_INSTALLED,
        Outcome.BENIGN,
        "Higher version already installed.",
        (),
    ),
    (
        ErrorCode.SAME_VERSION_INSTALLED,
        Outcome.BENIGN,
        "Same version already installed.",
        (),
    ),
    (
        ErrorCode.RESOURCES_IN_USE,
        Outcome.RECOVERABLE,
        "Resources modified are in-use.",
        (
            "Try closing Windows Terminal / PowerShell / Command Prompt and try again.",
            "If the problem persists, restart your computer.",
        ),
    ),
    (
        ErrorCode.CONNECTIVITY,
        Outcome.RECOVERABLE,
        "Cannot connect to the Internet to download the required files.",
        (
            "Try running the installer again and make sure you are connected to the Internet.",
            "Sometimes the nuget.org or GitHub servers are down, so you may need to try again later.",
        ),
    ),
)


@dataclass(frozen=True)
class DependencySpec:
    key: str
    label: str
    lookup_type: str
    lookup_id: str
    name_pattern: str
    fallback_url: str
    fallback_version: Optional[str] = None
    archive_layout: Optional[str] = None
    temp_name: Optional[str] = None

    def primary_pattern(self, arch: Architecture) -> str:
        return self.name_pattern.format(arch=arch.value)

    def fallback_url_for(self, arch: Architecture) -> str:
        return self.fallback_url.format(arch=arch.value, version=self.fallback_version or "")

    def archive_dir_for(self, arch: Architecture) -> Optional[str]:
        if not self.archive_layout:
            return None
        return self.archive_layout.format(arch=arch.value)


@dataclass(frozen=True)
class MainPackageSpec:
    label: str
    owner: str
    repo: str
    bundle_pattern: str
    license_pattern: str
    bundle_temp_name: str
    license_temp_name: str


@dataclass(frozen=True)
class RunContext:
    architecture: Architecture
    temp_dir: str
    runtime_library: DependencySpec
    ui_framework: DependencySpec
    main_package: MainPackageSpec
    path_entry: str = WINDOWS_APPS_DIR
    path_scopes: tuple[str, ...] = PATH_SCOPES


RUNTIME_LIBRARY = DependencySpec(
    key="vclibs",
    label="VCLibs",
    lookup_type="PackageFamilyName",
    lookup_id=VCLIBS_FAMILY_NAME,
    name_pattern=r"Microsoft\.VCLibs\.140\.00\.UWPDesktop_.*_{arch}__8wekyb3d8bbwe\.appx",
    fallback_url=VCLIBS_FALLBACK_URL,
)

UI_FRAMEWORK = DependencySpec(
    key="uixaml",
    label="UI.Xaml",
    lookup_type="PackageFamilyName",
    lookup_id=UI_XAML_FAMILY_NAME,
    name_pattern=r"Microsoft\.UI\.Xaml\.2\.8_.*_{arch}__8wekyb3d8bbwe\.appx",
    fallback_url=UI_XAML_NUGET_URL,
    fallback_version=UI_XAML_NUGET_VERSION,
    archive_layout=UI_XAML_ARCHIVE_LAYOUT,
    temp_name="Microsoft.UI.Xaml.{version}.zip",
)

WINGET_PACKAGE = MainPackageSpec(
    label="winget",
    owner=WINGET_REPO_OWNER,
    repo=WINGET_REPO_NAME,
    bundle_pattern=WINGET_BUNDLE_PATTERN,
    license_pattern=WINGET_LICENSE_PATTERN,
    bundle_temp_name="winget.msixbundle",
    license_temp_name="license1.xml",
)


def build_run_context(architecture: Architecture, temp_dir: Optional[str] = None) -> RunContext:
    return RunContext(
        architecture=architecture,
        temp_dir=temp_dir or tempfile.gettempdir(),
        runtime_library=RUNTIME_LIBRARY,
        ui_framework=UI_FRAMEWORK,
        main_package=WINGET_PACKAGE,
    )


def is_windows() -> bool:
    return os.name == "nt"


def is_admin() -> bool:
    if not is_windows():
        return False
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except Exception:
        return False


def broadcast_environment_change() -> None:
    if not is_windows():
        return
    try:
        result = ctypes.c_ulong()
        ctypes.windll.user32.SendMessageTimeoutW(
            0xFFFF,
            WM_SETTINGCHANGE,
            0,
            "Environment",
            SMTO_ABORTIFHUNG,
            5000,
            ctypes.byref(result),
        )
    except Exception:
        pass


def subprocess_creationflags_kwargs() -> dict[str, int]:
    if is_windows():
        return {"creationflags": CREATE_NO_WINDOW}
    return {}


def powershell_single_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def run_powershell(script: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        ["powershell", "-NoProfile", "-ExecutionPolicy", "Bypass", "-Command", script],
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        **subprocess_creationflags_kwargs(),
    )


def find_winget() -> Optional[str]:
    return shutil.which("winget")


def get_app_support_directory() -> str:
    local_app = os.environ.get("LocalAppData")
    if local_app:
        return os.path.join(local_app, APP_DIR_NAME)
    return os.path.join(os.path.expanduser("~"), "AppData", "Local", APP_DIR_NAME)


def get_last_run_log_path() -> str:
    return os.path.join(get_app_support_directory(), LAST_RUN_LOG_FILE)


def reset_last_run_log() -> Optional[str]:
    path = get_last_run_log_path()
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="\n") as f:
            started = time.strftime("%Y-%m-%d %H:%M:%S")
            f.write(f"{TOOL_NAME} {TOOL_VERSION} log started: {started}\n")
        return path
    except OSError:
        return None


def append_persistent_log_line(path: Optional[str], message: str) -> Optional[str]:
    if not path:
        return None
    try:
        with open(path, "a", encoding="utf-8", newline="\n") as f:
            f.write(message + "\n")
        return None
    except OSError as exc:
        return str(exc)


class ConsoleLog:
    """Log callback that echoes to the console and mirrors into the last-run log file."""

    def __init__(self, persistent_path: Optional[str] = None, stream=None) -> None:
        self.persistent_path = persistent_path
        self.stream = stream
        self._persistent_write_warning_shown = False

    def __call__(self, message: str) -> None:
        print(message, file=self.stream or sys.stdout, flush=True)
        err = append_persistent_log_line(self.persistent_path, message)
        if err and not self._persistent_write_warning_shown:
            self._persistent_write_warning_shown = True
            print(f"Persistent log write warning: {err}", file=self.stream or sys.stdout, flush=True)


def log_section(log: Callable[[str], None], title: str) -> None:
    log("")
    log(f"==== {title} ====")


def architecture_from_code(code: int, os_is_64bit: bool = True) -> Architecture:
    arch = CPU_ARCHITECTURE_CODES.get(code)
    if arch is None:
        raise UnknownArchitectureError(f"Unknown CPU architecture detected: {code}")
    if arch is Architecture.X64 and not os_is_64bit:
        return Architecture.X86
    return arch


def is_64bit_os() -> bool:
    for name in ("PROCESSOR_ARCHITEW6432", "PROCESSOR_ARCHITECTURE"):
        value = os.environ.get(name, "")
        if value:
            return value.upper().endswith("64")
    return platform.machine().endswith("64")


def query_cpu_architecture_code() -> int:
    completed = run_powershell(
        "(Get-CimInstance -ClassName Win32_Processor | Select-Object -First 1).Architecture"
    )
    text = (completed.stdout or "").strip()
    if completed.returncode != 0 or not text:
        detail = (completed.stderr or "").strip() or f"exit code {completed.returncode}"
        raise UnknownArchitectureError(f"Unable to query CPU architecture: {detail}")
    try:
        return int(text.splitlines()[0])
    except ValueError as exc:
        raise UnknownArchitectureError(f"Unknown CPU architecture detected: {text}") from exc


def detect_architecture() -> Architecture:
    return architecture_from_code(query_cpu_architecture_code(), is_64bit_os())


def signal_from_output(text: str) -> InstallSignal:
    message = (text or "").strip()
    known_codes = {code.value[2:].upper(): code for code in ErrorCode if code.value.startswith("0x")}
    for match in HRESULT_PATTERN.finditer(message):
        code = known_codes.get(match.group(0)[2:].upper())
        if code is not None:
            return InstallSignal(code, message)
    lowered = message.lower()
    if any(phrase in lowered for phrase in CONNECTIVITY_PHRASES):
        return InstallSignal(ErrorCode.CONNECTIVITY, message)
    return InstallSignal(ErrorCode.UNKNOWN, message)


def signal_from_exception(exc: BaseException) -> InstallSignal:
    if isinstance(exc, InstallFailure) and exc.result.signal is not None:
        return exc.result.signal
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return InstallSignal(ErrorCode.CONNECTIVITY, str(exc))
    cause = exc.__cause__
    if isinstance(cause, (requests.ConnectionError, requests.Timeout)):
        return InstallSignal(ErrorCode.CONNECTIVITY, str(exc))
    return signal_from_output(str(exc))


def classify_failure(
    signal: InstallSignal,
    log: Optional[Callable[[str], None]] = None,
) -> InstallAttemptResult:
    result: Optional[InstallAttemptResult] = None
    for code, outcome, reason, guidance in CLASSIFICATION_TABLE:
        if signal.code is code:
            result = InstallAttemptResult(outcome, reason, guidance, signal)
            break
    if result is None:
        result = InstallAttemptResult(
            Outcome.FATAL,
            signal.message or "Unknown installation error.",
            (f"If the problem persists, report it at {ISSUES_URL}",),
            signal,
        )

    if log is not None:
        if result.outcome is Outcome.BENIGN:
            log(f"{result.reason} That's okay, continuing...")
        else:
            if result.outcome is Outcome.RECOVERABLE:
                log(f"Warning: {result.reason}")
            for line in result.guidance:
                log(f"Warning: {line}")
    return result


def create_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": f"{TOOL_NAME}/{TOOL_VERSION}"})
    return session


def get_latest_release(owner: str, repo: str, session: requests.Session) -> dict:
    url = f"{GITHUB_API_URL}/repos/{owner}/{repo}/releases/latest"
    response = session.get(
        url,
        headers={"Accept": "application/vnd.github+json"},
        timeout=HTTP_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json()


def resolve_release_asset(owner: str, repo: str, pattern: str, session: requests.Session) -> str:
    try:
        release = get_latest_release(owner, repo, session)
    except (requests.RequestException, ValueError) as exc:
        raise ResolutionError(f"Unable to fetch the latest {owner}/{repo} release: {exc}") from exc

    for asset in release.get("assets") or []:
        name = asset.get("name") or ""
        url = asset.get("browser_download_url")
        if url and re.search(pattern, name):
            return url
    raise ResolutionError(
        f"No asset matching {pattern!r} in {owner}/{repo} release {release.get('tag_name', '?')}"
    )


def resolve_store_package_url(
    lookup_type: str,
    lookup_id: str,
    pattern: str,
    session: requests.Session,
) -> str:
    try:
        response = session.post(
            STORE_LOOKUP_URL,
            data={"type": lookup_type, "url": lookup_id, "ring": STORE_RING, "lang": STORE_LANG},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise ResolutionError(f"Package lookup for {lookup_id} failed: {exc}") from exc

    soup = BeautifulSoup(response.text, "html.parser")
    for anchor in soup.find_all("a", href=True):
        name = anchor.get_text(strip=True)
        if re.search(pattern, name):
            return anchor["href"]
    raise ResolutionError(f"Package lookup for {lookup_id} returned no file matching {pattern!r}")


def download_file(url: str, dest: str, session: requests.Session) -> str:
    with session.get(url, stream=True, timeout=HTTP_TIMEOUT_SECONDS) as response:
        response.raise_for_status()
        with open(dest, "wb") as f:
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    f.write(chunk)
    return dest


def extract_archive(archive_path: str, dest_dir: str) -> str:
    os.makedirs(dest_dir, exist_ok=True)
    with zipfile.ZipFile(archive_path) as archive:
        archive.extractall(dest_dir)
    return dest_dir


def find_layout_packages(root: str, layout: str) -> list[str]:
    package_dir = os.path.join(root, *layout.split("/"))
    return sorted(glob.glob(os.path.join(package_dir, "*.appx")))


class TempArtifacts:
    """Paths created during a run, removed by cleanup() in reverse order."""

    def __init__(self) -> None:
        self.paths: list[str] = []

    def track(self, path: str) -> str:
        if path not in self.paths:
            self.paths.append(path)
        return path

    def cleanup(self, log: Optional[Callable[[str], None]] = None) -> list[str]:
        removed: list[str] = []
        for path in reversed(self.paths):
            if remove_temp_artifact(path):
                removed.append(path)
                if log is not None:
                    log(f"Removed temporary item: {path}")
        self.paths = []
        return removed


def remove_temp_artifact(path: str) -> bool:
    try:
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)
        else:
            return False
        return True
    except OSError:
        return False


def build_appx_install_script(package: str, license_path: Optional[str] = None) -> str:
    prefix = "$ProgressPreference = 'SilentlyContinue'; $ErrorActionPreference = 'Stop'; "
    if license_path:
        return (
            prefix
            + "Add-AppxProvisionedPackage -Online"
            + f" -PackagePath {powershell_single_quote(package)}"
            + f" -LicensePath {powershell_single_quote(license_path)} | Out-Null"
        )
    return prefix + f"Add-AppxPackage -Path {powershell_single_quote(package)}"


def run_appx_install(package: str, license_path: Optional[str] = None) -> Optional[InstallSignal]:
    """Run the OS install and return the raw failure signal, or None on success."""
    try:
        completed = run_powershell(build_appx_install_script(package, license_path))
    except OSError as exc:
        return InstallSignal(ErrorCode.UNKNOWN, f"Unable to start PowerShell: {exc}")
    if completed.returncode == 0:
        return None
    output = "\n".join(part.strip() for part in (completed.stderr, completed.stdout) if part and part.strip())
    return signal_from_output(output or f"Exit code {completed.returncode}")


def install_package(
    package: str,
    log: Callable[[str], None],
    license_path: Optional[str] = None,
) -> InstallAttemptResult:
    log(f"Installing {package}")
    signal = run_appx_install(package, license_path)
    if signal is None:
        return SUCCESS_RESULT
    return classify_failure(signal, log)


def attempt_primary_install(
    spec: DependencySpec,
    context: RunContext,
    session: requests.Session,
    log: Callable[[str], None],
) -> Optional[InstallSignal]:
    url = resolve_store_package_url(
        spec.lookup_type,
        spec.lookup_id,
        spec.primary_pattern(context.architecture),
        session,
    )
    log(f"Resolved {spec.label} package: {url}")
    log(f"Installing {spec.label} ({context.architecture.value})")
    return run_appx_install(url)


def attempt_alternate_install(
    spec: DependencySpec,
    context: RunContext,
    session: requests.Session,
    artifacts: TempArtifacts,
    log: Callable[[str], None],
) -> Optional[InstallSignal]:
    arch = context.architecture
    url = spec.fallback_url_for(arch)
    archive_dir = spec.archive_dir_for(arch)
    if archive_dir is None:
        log(f"Installing {spec.label} from {url}")
        return run_appx_install(url)

    archive_name = (spec.temp_name or f"{spec.key}.zip").format(
        arch=arch.value, version=spec.fallback_version or ""
    )
    archive_path = artifacts.track(os.path.join(context.temp_dir, archive_name))
    log(f"Downloading {spec.label} archive from {url}")
    download_file(url, archive_path, session)

    extract_dir = artifacts.track(os.path.splitext(archive_path)[0])
    log(f"Extracting {archive_path}")
    extract_archive(archive_path, extract_dir)

    packages = find_layout_packages(extract_dir, archive_dir)
    if not packages:
        raise ResolutionError(f"No {spec.label} packages found under {archive_dir} in {url}")

    for package in packages:
        log(f"Installing {spec.label} package {os.path.basename(package)}")
        signal = run_appx_install(package)
        if signal is None:
            continue
        if classify_failure(signal).outcome is not Outcome.BENIGN:
            return signal
        classify_failure(signal, log)
    return None


def _attempt(action: Callable[[], Optional[InstallSignal]]) -> Optional[InstallSignal]:
    try:
        return action()
    except (InstallerError, requests.RequestException, OSError, zipfile.BadZipFile) as exc:
        return signal_from_exception(exc)


def install_dependency(
    spec: DependencySpec,
    context: RunContext,
    session: requests.Session,
    artifacts: TempArtifacts,
    log: Callable[[str], None],
) -> InstallAttemptResult:
    """Install from the lookup service, falling back to the pinned source once."""
    signal = _attempt(lambda: attempt_primary_install(spec, context, session, log))
    if signal is None:
        log(f"{spec.label} installed successfully.")
        return SUCCESS_RESULT

    log(f"Warning: Error when trying to install {spec.label}: {signal.message}")
    log(f"Warning: Trying alternate method for {spec.label}...")
    signal = _attempt(lambda: attempt_alternate_install(spec, context, session, artifacts, log))
    if signal is None:
        log(f"{spec.label} installed successfully (alternate method).")
        return SUCCESS_RESULT
    return classify_failure(signal, log)


def install_main_package(
    context: RunContext,
    session: requests.Session,
    artifacts: TempArtifacts,
    log: Callable[[str], None],
) -> InstallAttemptResult:
    spec = context.main_package
    bundle_url = resolve_release_asset(spec.owner, spec.repo, spec.bundle_pattern, session)
    license_url = resolve_release_asset(spec.owner, spec.repo, spec.license_pattern, session)
    log(f"{spec.label} bundle: {bundle_url}")
    log(f"{spec.label} license: {license_url}")

    bundle_path = artifacts.track(os.path.join(context.temp_dir, spec.bundle_temp_name))
    license_path = artifacts.track(os.path.join(context.temp_dir, spec.license_temp_name))
    try:
        download_file(bundle_url, bundle_path, session)
        download_file(license_url, license_path, session)
    except (requests.RequestException, OSError) as exc:
        return classify_failure(signal_from_exception(exc), log)

    log(f"Provisioning {spec.label} for all users")
    return install_package(bundle_path, log, license_path=license_path)


def split_path(value: str) -> list[str]:
    if not value:
        return []
    return [part for part in value.split(";") if part]


def normalize_path_for_compare(path: str) -> str:
    expanded = os.path.expandvars(path.strip())
    normalized = os.path.normpath(expanded)
    return os.path.normcase(normalized)


def dedupe_path_entries(parts: list[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for part in parts:
        norm = normalize_path_for_compare(part)
        if norm not in seen:
            unique.append(part)
            seen.add(norm)
    return unique


def merge_path_entry(value: str, directory: str) -> Optional[str]:
    """Return the new Path value, or None when nothing needs to be written.

    A directory that is already exactly one segment of value is a no-op. A
    missing directory is appended; a directory listed more than once is
    collapsed. Either way the whole list is deduplicated, first occurrence wins.
    """
    parts = split_path(value)
    target = normalize_path_for_compare(directory)
    occurrences = sum(1 for part in parts if normalize_path_for_compare(part) == target)
    if occurrences == 1:
        return None
    if occurrences == 0:
        parts.append(directory)
    return ";".join(dedupe_path_entries(parts))


def _environment_key(scope: str) -> tuple[int, str]:
    if scope == "user":
        return (winreg.HKEY_CURRENT_USER, USER_ENVIRONMENT_KEY)
    if scope == "machine":
        return (winreg.HKEY_LOCAL_MACHINE, MACHINE_ENVIRONMENT_KEY)
    raise ValueError(f"Unsupported scope: {scope}")


def read_path_variable(scope: str) -> tuple[str, int]:
    root, subkey = _environment_key(scope)
    with winreg.OpenKey(root, subkey, 0, winreg.KEY_READ) as key:
        try:
            value, reg_type = winreg.QueryValueEx(key, "Path")
        except FileNotFoundError:
            return ("", winreg.REG_EXPAND_SZ)
    if reg_type not in (winreg.REG_EXPAND_SZ, winreg.REG_SZ):
        reg_type = winreg.REG_EXPAND_SZ
    return (value or "", reg_type)


def write_path_variable(scope: str, value: str, reg_type: int) -> None:
    root, subkey = _environment_key(scope)
    with winreg.OpenKey(root, subkey, 0, winreg.KEY_READ | winreg.KEY_WRITE) as key:
        winreg.SetValueEx(key, "Path", 0, reg_type, value)


def update_path(scope: str, directory: str) -> tuple[bool, Optional[str]]:
    if winreg is None:
        return (False, "The Windows registry is not available on this system.")
    try:
        current, reg_type = read_path_variable(scope)
        new_value = merge_path_entry(current, directory)
        if new_value is None:
            return (False, None)
        if "%" in new_value:
            reg_type = winreg.REG_EXPAND_SZ
        write_path_variable(scope, new_value, reg_type)
    except OSError as exc:
        return (False, str(exc))
    broadcast_environment_change()
    return (True, None)


def refresh_process_path(directory: str) -> bool:
    expanded = os.path.expandvars(directory)
    new_value = merge_path_entry(os.environ.get("PATH", ""), expanded)
    if new_value is None:
        return False
    os.environ["PATH"] = new_value
    return True


class InstallStep(Enum):
    DETECT_ARCH = "Detecting CPU architecture"
    INSTALL_RUNTIME_LIB = "Installing VCLibs"
    INSTALL_UI_FRAMEWORK = "Installing UI.Xaml"
    INSTALL_MAIN_PACKAGE = "Installing winget"
    UPDATE_PATH = "Updating PATH"
    CLEANUP = "Cleaning up"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class InstallReport:
    state: InstallStep
    failed_step: Optional[InstallStep] = None
    error: Optional[BaseException] = None
    architecture: Optional[Architecture] = None
    path_scopes_changed: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.state is InstallStep.DONE


def require_success(label: str, result: InstallAttemptResult) -> None:
    if not result.ok:
        raise InstallFailure(label, result)


def update_path_scopes(context: RunContext, log: Callable[[str], None]) -> list[str]:
    changed: list[str] = []
    for scope in context.path_scopes:
        added, err = update_path(scope, context.path_entry)
        if err:
            log(f"Warning: {scope.capitalize()} PATH update warning: {err}")
        elif added:
            log(f"Added {context.path_entry} to {scope} PATH.")
            changed.append(scope)
        else:
            log(f"{scope.capitalize()} PATH already contains {context.path_entry}.")
    refresh_process_path(context.path_entry)
    return changed


def run_install(
    log: Callable[[str], None],
    session: Optional[requests.Session] = None,
    temp_dir: Optional[str] = None,
    detect: Callable[[], Architecture] = detect_architecture,
) -> InstallReport:
    """Run every install step in order and report the terminal state.

    Any failure stops the run where it happened. Nothing already installed is
    rolled back and temporary files are only removed on success.
    """
    session = session or create_session()
    artifacts = TempArtifacts()
    step = InstallStep.DETECT_ARCH
    arch: Optional[Architecture] = None
    changed: list[str] = []
    try:
        log_section(log, step.value)
        arch = detect()
        context = build_run_context(arch, temp_dir)
        log(f"CPU architecture: {arch.value}")

        step = InstallStep.INSTALL_RUNTIME_LIB
        log_section(log, step.value)
        result = install_dependency(context.runtime_library, context, session, artifacts, log)
        require_success(context.runtime_library.label, result)

        step = InstallStep.INSTALL_UI_FRAMEWORK
        log_section(log, step.value)
        result = install_dependency(context.ui_framework, context, session, artifacts, log)
        require_success(context.ui_framework.label, result)

        step = InstallStep.INSTALL_MAIN_PACKAGE
        log_section(log, step.value)
        result = install_main_package(context, session, artifacts, log)
        require_success(context.main_package.label, result)

        step = InstallStep.UPDATE_PATH
        log_section(log, step.value)
        changed = update_path_scopes(context, log)

        step = InstallStep.CLEANUP
        log_section(log, step.value)
        artifacts.cleanup(log)
    except Exception as exc:
        return InstallReport(InstallStep.FAILED, failed_step=step, error=exc, architecture=arch)
    return InstallReport(InstallStep.DONE, architecture=arch, path_scopes_changed=tuple(changed))


def log_success_banner(log: Callable[[str], None]) -> None:
    log("")
    log("winget installed successfully.")
    if find_winget():
        log("winget is ready to use. Open a new terminal and run 'winget --version'.")
    else:
        log(
            "Warning: winget is installed but not yet on PATH for this session. "
            "Open a new terminal, or sign out and back in."
        )


def log_failure_banner(log: Callable[[str], None], report: InstallReport) -> None:
    step = report.failed_step.value if report.failed_step else "unknown step"
    log("")
    log("Warning: Oops! Something went wrong.")
    log(f"ERROR: {step} failed: {report.error}")
    error = report.error
    if error is not None:
        detail = "".join(traceback.format_exception(type(error), error, error.__traceback__)).rstrip()
        log(detail)
    log(f"If you need help, please open an issue at {ISSUES_URL}")


def parse_version(text: str) -> tuple[int, ...]:
    numbers = re.findall(r"\d+", (text or "").strip().lstrip("vV").split("-", 1)[0])
    return tuple(int(n) for n in numbers)


def check_for_updates(log: Callable[[str], None], session: Optional[requests.Session] = None) -> bool:
    """Report whether a newer release of this tool exists; True when one does."""
    session = session or create_session()
    try:
        release = get_latest_release(SELF_REPO_OWNER, SELF_REPO_NAME, session)
    except (requests.RequestException, ValueError) as exc:
        log(f"Warning: Unable to check for updates: {exc}")
        return False

    latest = str(release.get("tag_name") or "").strip()
    published = release.get("published_at") or "unknown"
    log(f"Current version: {TOOL_VERSION}")
    log(f"Latest version: {latest or 'unknown'} (published {published})")
    if latest and parse_version(latest) > parse_version(TOOL_VERSION):
        page = release.get("html_url") or f"https://github.com/{SELF_REPO_OWNER}/{SELF_REPO_NAME}/releases"
        log(f"A newer version is available: {page}")
        return True
    log(f"{TOOL_NAME} is up to date.")
    return False


def ensure_supported_system() -> None:
    if not is_windows():
        raise UnsupportedSystemError("winget can only be installed on Windows.")
    build = sys.getwindowsversion().build
    if build < MIN_WINDOWS_BUILD:
        raise UnsupportedSystemError(
            f"winget requires Windows 10 1809 (build {MIN_WINDOWS_BUILD}) or later; this system is build {build}."
        )


def log_diagnostics(log: Callable[[str], None], log_path: Optional[str]) -> None:
    log_section(log, "Diagnostics")
    log(f"{TOOL_NAME} version: {TOOL_VERSION}")
    log(f"Platform: {platform.platform()}")
    log(f"Python: {sys.version.split()[0]} ({sys.executable})")
    for name in ("PROCESSOR_ARCHITECTURE", "PROCESSOR_ARCHITEW6432"):
        log(f"{name}: {os.environ.get(name, '(not set)')}")
    log(f"Administrator mode: {'Yes' if is_admin() else 'No'}")
    log(f"Log file: {log_path or '(unavailable)'}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=TOOL_NAME,
        description="Install winget and its dependencies (VCLibs, UI.Xaml) on Windows.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--check-for-updates",
        action="store_true",
        help="Check whether a newer release of this installer exists and exit.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Install even if winget is already available.",
    )
    parser.add_argument(
        "--verbose",
        "--debug",
        dest="verbose",
        action="store_true",
        help="Print host and runtime diagnostics before installing.",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.version:
        print(TOOL_VERSION)
        return 0
    if args.check_for_updates:
        check_for_updates(ConsoleLog())
        return 0

    log_path = reset_last_run_log()
    log = ConsoleLog(log_path)
    log(f"{TOOL_NAME} {TOOL_VERSION}")

    try:
        ensure_supported_system()
    except UnsupportedSystemError as exc:
        log(f"ERROR: {exc}")
        return 1
    if args.verbose:
        log_diagnostics(log, log_path)
    if not is_admin():
        log("ERROR: Administrator privileges are required. Re-run from an elevated terminal.")
        return 1

    existing = find_winget()
    if existing and not args.force:
        log(f"winget is already installed: {existing}")
        log("Use --force to reinstall it anyway.")
        return 0

    report = run_install(log)
    if report.succeeded:
        log_success_banner(log)
        return 0
    log_failure_banner(log, report)
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

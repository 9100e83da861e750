"""Remote shell commands, package identifiers and toolchain minimums."""

from __future__ import annotations

from macbridge.version import ToolchainVersion

# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------

# Non-interactive SSH sessions skip the login profile, so dotnet and the
# Xcode tools are not on PATH unless the profile files are sourced first.
PROFILE_SOURCES = (
    "source /etc/profile; "
    "source /etc/bashrc; "
    "[ -f ~/.bashrc ] && source ~/.bashrc; "
    "[ -f ~/.bash_profile ] && source ~/.bash_profile; "
    "[ -f ~/.profile ] && source ~/.profile; "
)

PLAIN_SHELL = "exec -a -l /bin/sh --noprofile --norc"
SHELL_PROMPT = "$"

GET_HOME = "echo $HOME"
GET_HOSTNAME = "hostname"
GET_IP_ADDRESS = "ifconfig | grep 'inet ' | awk '{print $2}' | grep -v 127.0.0.1"
GET_OS_VERSION = "sw_vers -productVersion"

GET_DOTNET_SYMLINK = "ls -l $(which dotnet)"
GET_DOTNET_PATH = "which dotnet"
GET_DOTNET_RUNTIMES = "dotnet --list-runtimes"
GET_DOTNET_SDKS = "dotnet --list-sdks"
GET_DOTNET_WORKLOADS = "dotnet workload list"

GET_SIGNING_CERTIFICATE = 'security find-identity -v -p codesigning | grep "Mac Developer"'
GET_PROVISIONING_PROFILES = (
    "ls -1 ~/Library/MobileDevice/'Provisioning Profiles'/*.provisionprofile"
)
READ_PROVISIONING_PROFILE = "security cms -D -i"

GET_XCODE_VERSION = "xcodebuild -version"
GET_XCODE_SELECT = "xcode-select -p"
READ_XCODE_LICENSE = "defaults read /Library/Preferences/com.apple.dt.Xcode"
XCODE_LICENSE_KEYS = ("IDELastGMLicenseAgreedTo", "IDELastPTRLicenseAgreedTo")

GET_PKG_LIST = "pkgutil --pkgs"
GET_PKG_INFO = "pkgutil --pkg-info={package_id}"

DEBUGGER_INSTALL = "curl -sSL https://aka.ms/getvsdbgsh | bash /dev/stdin -v latest -l {directory}"
DEBUGGER_INSTALL_SUCCESS = "Success"
DEBUGGER_BINARY = "vsdbg"
DEBUGGER_VERSION = "cat {directory}/version.txt"
DEBUGGER_PID = "ps -A | grep './vsdbg --interpreter=vscode' | grep -v grep | awk '{print $1}'"
DEBUGGER_START = (
    "cd {directory} && nohup ./vsdbg --interpreter=vscode --pauseEngineForDebugger "
    "> {directory}/vsdbg.log 2>&1 &"
)
DEBUGGER_STOP = "kill -9 {pid}"

# ---------------------------------------------------------------------------
# Packages
# ---------------------------------------------------------------------------

CORE_TYPES_PKG = "com.apple.pkg.CoreTypes"
MOBILE_DEVICE_DEVELOPMENT_PKG = "com.apple.pkg.MobileDeviceDevelopment"
MOBILE_DEVICE_PKG = "com.apple.pkg.MobileDevice"
XCODE_SYSTEM_RESOURCES_PKG = "com.apple.pkg.XcodeSystemResources"

REQUIRED_PACKAGES = (
    MOBILE_DEVICE_DEVELOPMENT_PKG,
    CORE_TYPES_PKG,
    MOBILE_DEVICE_PKG,
)

MINIMUM_MACOS_VERSION = ToolchainVersion(10, 15, 0)
MINIMUM_XCODE_VERSION = ToolchainVersion(13, 0, 0)
MINIMUM_XCODE_SYSTEM_RESOURCES_VERSION = ToolchainVersion(16, 0, 0)

# ---------------------------------------------------------------------------
# .NET
# ---------------------------------------------------------------------------

BASE_RUNTIME = "Microsoft.NETCore.App"
ASPNETCORE_RUNTIME = "Microsoft.AspNetCore.App"
WINDOWS_DESKTOP_RUNTIME = "Microsoft.WindowsDesktop.App"
REMOTE_WORKLOAD_ID = "maui"
LOCAL_WORKLOAD_ID = "maui-windows"

import pytest

from bambu_lan import paths
from bambu_lan.errors import (
    HiddenPathError,
    InvalidCharactersError,
    InvalidPathError,
    PathSecurityError,
    PathTooLongError,
    PathTraversalError,
    SystemDirectoryError,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("/sdcard/./model.3mf", "/sdcard/model.3mf"),
        ("/sdcard/", "/sdcard"),
        ("/", "/"),
        ("/sdcard//models///a.3mf", "/sdcard/models/a.3mf"),
        ("/sdcard/my%20model.3mf", "/sdcard/my model.3mf"),
        ("/sdcard/.model.3mf", "/sdcard/.model.3mf"),
        ("/cache/.plate.gcode", "/cache/.plate.gcode"),
    ],
)
def test_sanitize_path_accepts(raw, expected):
    assert paths.sanitize_path(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "../etc/passwd",
        "./model.3mf",
        "/sdcard/../etc/passwd",
        "%2e%2e/etc/passwd",
        "%252e%252e/etc/passwd",
        "..\\windows\\win.ini",
    ],
)
def test_sanitize_path_rejects_traversal(raw):
    with pytest.raises(PathTraversalError):
        paths.sanitize_path(raw)


@pytest.mark.parametrize(
    "raw, blocked",
    [
        ("/etc/passwd", "/etc"),
        ("/ETC/shadow", "/etc"),
        ("/proc/self/environ", "/proc"),
        ("/tmp/x", "/tmp"),
        ("\\Windows\\System32", "\\windows"),
    ],
)
def test_sanitize_path_rejects_system_directories(raw, blocked):
    with pytest.raises(SystemDirectoryError) as excinfo:
        paths.sanitize_path(raw)

    assert excinfo.value.directory == blocked
    assert excinfo.value.rule == "system-directory"


def test_sanitize_path_rejects_hidden_components():
    with pytest.raises(HiddenPathError, match=".ssh"):
        paths.sanitize_path("/sdcard/.ssh/keys")


def test_sanitize_path_strips_nul_bytes():
    assert paths.sanitize_path("/sdcard/mo\0del.3mf") == "/sdcard/model.3mf"


def test_sanitize_path_limits():
    with pytest.raises(InvalidPathError):
        paths.sanitize_path("")
    with pytest.raises(PathTooLongError) as excinfo:
        paths.sanitize_path("/sdcard/" + "a" * 4096)
    assert excinfo.value.limit == 4096


def test_security_errors_are_value_errors():
    with pytest.raises(ValueError):
        paths.sanitize_path("/etc/hosts")
    assert issubclass(PathTraversalError, PathSecurityError)


@pytest.mark.parametrize("name", ["model.3mf", "Benchy_v2-final.gcode", "a b.3mf"])
def test_sanitize_filename_accepts(name):
    assert paths.sanitize_filename(name) == name


@pytest.mark.parametrize(
    "name, error",
    [
        ("", InvalidPathError),
        ("..", InvalidPathError),
        ("models/a.3mf", InvalidCharactersError),
        ("models\\a.3mf", InvalidCharactersError),
        (".hidden.3mf", HiddenPathError),
        ("what?.3mf", InvalidCharactersError),
        ("tab\there.3mf", InvalidCharactersError),
        ("a" * 256, PathTooLongError),
    ],
)
def test_sanitize_filename_rejects(name, error):
    with pytest.raises(error):
        paths.sanitize_filename(name)


def test_validate_dispatches_on_separators():
    assert paths.validate("model.3mf") == "model.3mf"
    assert paths.validate("/sdcard/model.3mf") == "/sdcard/model.3mf"
    with pytest.raises(InvalidCharactersError):
        paths.validate("bad|name.3mf")


def test_validate_within_bounds():
    assert paths.validate_within_bounds("/sdcard", "models/a.3mf") == "/sdcard/models/a.3mf"
    assert paths.validate_within_bounds("/sdcard", "/sdcard/a.3mf") == "/sdcard/a.3mf"

    with pytest.raises(PathTraversalError, match="escapes allowed directory"):
        paths.validate_within_bounds("/sdcard", "/cache/a.3mf")


def test_safe_join():
    assert paths.safe_join("/sdcard", "./models/a.3mf") == "/sdcard/models/a.3mf"
    assert paths.safe_join("/sdcard", "/a.3mf") == "/sdcard/a.3mf"
    assert paths.safe_join("/sdcard/", "a.3mf") == "/sdcard/a.3mf"

    with pytest.raises(PathTraversalError):
        paths.safe_join("/sdcard", "../etc/passwd")

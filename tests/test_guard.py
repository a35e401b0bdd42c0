from pathlib import Path

import pytest

from roundtable.config import GuardrailsConfig
from roundtable.guard import PathGuard, PathValidationError


def _guard() -> PathGuard:
    return PathGuard.from_config(GuardrailsConfig())


def test_allowed_paths_are_normalized() -> None:
    guard = _guard()

    assert guard.validate("src/app.ts") == "src/app.ts"
    assert guard.validate("./notes/alex-notes.md") == "notes/alex-notes.md"
    assert guard.validate("docs\\guide.md") == "docs/guide.md"


@pytest.mark.parametrize(
    ("path", "message"),
    [
        ("", "empty"),
        ("../outside.ts", "traversal"),
        ("src/../../etc.ts", "traversal"),
        ("/etc/passwd.ts", "Absolute"),
        ("lib/app.ts", "allowed root"),
        ("src/app.py", "extension"),
        ("src/.env", "blocked"),
        ("src/node_modules/pkg/index.js", "blocked"),
        (".git/config.json", "blocked"),
        ("src", "allowed root"),
    ],
)
def test_rejected_paths(path: str, message: str) -> None:
    with pytest.raises(PathValidationError, match=message):
        _guard().validate(path)


def test_sensitive_file_is_readable_but_not_writable() -> None:
    guard = _guard()

    assert guard.validate("src/config.ts", "read") == "src/config.ts"
    with pytest.raises(PathValidationError, match="sensitive"):
        guard.validate("src/config.ts", "edit")
    assert guard.is_allowed("src/config.ts", "write") is False


def test_resolve_rejects_symlink_escaping_repository(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    (repo / "src").mkdir(parents=True)
    outside = tmp_path / "secret.ts"
    outside.write_text("export const key = 1;\n", encoding="utf-8")
    (repo / "src" / "link.ts").symlink_to(outside)

    with pytest.raises(PathValidationError, match="outside the repository"):
        _guard().resolve(repo, "src/link.ts")
    assert _guard().resolve(repo, "src/app.ts") == (repo / "src" / "app.ts").resolve()

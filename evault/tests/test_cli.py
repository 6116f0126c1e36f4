from __future__ import annotations

import json
import zipfile
from pathlib import Path

import pytest

from evault.cli.main import build_parser, main


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("EV_PASS", "correct-horse")
    monkeypatch.setenv("EVAULT_KDF_TIME_COST", "1")
    monkeypatch.setenv("EVAULT_KDF_MEMORY_KIB", "8192")
    monkeypatch.delenv("EVAULT_HOME", raising=False)
    return tmp_path


def _run(capsys, *argv: str):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def _vault_args(home: Path):
    return ["--home", str(home), "--passphrase-env", "EV_PASS"]


def test_full_workflow(cli_env, capsys) -> None:
    home = cli_env
    photo = home / "IMG_0001.jpg"
    photo.write_bytes(b"\xff\xd8original")
    redacted = home / "IMG_0001_redacted.jpg"
    redacted.write_bytes(b"\xff\xd8redacted")

    code, out, _ = _run(capsys, "init", *_vault_args(home), "--name", "Case 7")
    assert code == 0
    init = json.loads(out)
    assert init["vault_name"] == "Case 7"
    assert init["signing_public_key_pem"].startswith("-----BEGIN PUBLIC KEY-----")
    assert (home / "primary.db").exists()

    code, out, _ = _run(capsys, "capture", str(photo), *_vault_args(home), "--what", "Gate")
    assert code == 0
    item = json.loads(out)
    assert item["type"] == "photo"
    assert item["mime"] == "image/jpeg"

    code, _, _ = _run(capsys, "testimony", *_vault_args(home), "--what", "Statement")
    assert code == 0

    code, out, _ = _run(
        capsys, "redact", item["id"], str(redacted), *_vault_args(home), "--rect", "1,1,2,2"
    )
    assert code == 0
    assert json.loads(out)["redacted_size"] == len(b"\xff\xd8redacted")

    code, out, _ = _run(capsys, "items", "--home", str(home))
    assert code == 0
    assert {i["type"] for i in json.loads(out)} == {"photo", "testimony"}

    code, out, _ = _run(capsys, "custody", "show", item["id"], "--home", str(home))
    assert [e["action"] for e in json.loads(out)] == ["capture", "redact"]

    code, out, _ = _run(capsys, "custody", "verify", item["id"], *_vault_args(home), "--record")
    assert code == 0
    assert json.loads(out)["ok"] is True

    out_dir = home / "exports"
    code, out, _ = _run(capsys, "export", *_vault_args(home), "--out-dir", str(out_dir))
    assert code == 0
    result = json.loads(out)
    archive = Path(result["path"])
    assert archive.exists()
    assert result["files"] == 3
    # capture, redact, verify for the photo; capture for the testimony.
    assert result["custody_lines"] == 4

    code, out, _ = _run(capsys, "verify-export", str(archive))
    assert code == 0
    assert out.strip().endswith("RESULT: OK")

    # Tamper with one media file inside the archive.
    tampered = home / "tampered.zip"
    with zipfile.ZipFile(archive) as src, zipfile.ZipFile(tampered, "w") as dst:
        for info in src.infolist():
            data = src.read(info.filename)
            if info.filename.endswith("-original.jpg"):
                data = data[:-1] + b"X"
            dst.writestr(info, data)
    code, out, _ = _run(capsys, "verify-export", str(tampered), "--json")
    assert code == 1
    assert json.loads(out)["counts"]["filesFailed"] == 1


def test_wrong_passphrase_exits_2(cli_env, capsys, monkeypatch) -> None:
    home = cli_env
    assert _run(capsys, "init", *_vault_args(home))[0] == 0
    monkeypatch.setenv("EV_PASS", "wrong")

    code, _, err = _run(capsys, "unlock", *_vault_args(home))
    assert code == 2
    assert "error: invalid passphrase" in err


def test_unset_passphrase_variable(cli_env, capsys) -> None:
    code, _, err = _run(capsys, "init", "--home", str(cli_env), "--passphrase-env", "NOPE_UNSET")
    assert code == 2
    assert "NOPE_UNSET" in err


def test_interactive_passphrase_must_match(cli_env, capsys, monkeypatch) -> None:
    answers = iter(["one", "two"])
    monkeypatch.setattr("getpass.getpass", lambda prompt="": next(answers))
    code, _, err = _run(capsys, "init", "--home", str(cli_env))
    assert code == 2
    assert "do not match" in err


def test_unknown_item_exits_2(cli_env, capsys) -> None:
    home = cli_env
    _run(capsys, "init", *_vault_args(home))
    redacted = home / "r.png"
    redacted.write_bytes(b"png")
    code, _, err = _run(capsys, "redact", "missing", str(redacted), *_vault_args(home))
    assert code == 2
    assert "item not found" in err


def test_capture_needs_type_for_unknown_mime(cli_env, capsys) -> None:
    home = cli_env
    _run(capsys, "init", *_vault_args(home))
    doc = home / "notes.txt"
    doc.write_text("hello")
    code, _, err = _run(capsys, "capture", str(doc), *_vault_args(home))
    assert code == 2
    assert "--type" in err


def test_demo_command_seeds_demo_vault(cli_env, capsys) -> None:
    home = cli_env
    code, out, _ = _run(capsys, "demo", "--home", str(home))
    assert code == 0
    assert len(json.loads(out)["seeded"]) == 2
    assert not (home / "primary.db").exists()

    code, out, _ = _run(capsys, "items", "--home", str(home), "--demo")
    assert len(json.loads(out)) == 2


def test_verify_export_missing_path(cli_env, capsys) -> None:
    code, _, err = _run(capsys, "verify-export", str(cli_env / "nope.zip"))
    assert code == 2
    assert "no such file" in err


def test_rect_argument_validation() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["redact", "id", "f.png", "--rect", "1,2,3"])


def test_redact_normalizes_rects(cli_env, capsys) -> None:
    home = cli_env
    photo = home / "IMG_0002.png"
    photo.write_bytes(b"png")
    assert _run(capsys, "init", *_vault_args(home))[0] == 0
    item = json.loads(_run(capsys, "capture", str(photo), *_vault_args(home))[1])

    code, out, _ = _run(
        capsys,
        "redact",
        item["id"],
        str(photo),
        *_vault_args(home),
        "--rect=10,10,-4,-6",
        "--rect=8,8,5,5",
        "--rect=3,3,0,2",
        "--image-width",
        "10",
        "--image-height",
        "10",
    )
    assert code == 0
    assert json.loads(out)["rects"] == [
        {"x": 6.0, "y": 4.0, "width": 4.0, "height": 6.0},
        {"x": 8.0, "y": 8.0, "width": 2.0, "height": 2.0},
    ]

    code, out, _ = _run(capsys, "custody", "show", item["id"], "--home", str(home))
    assert json.loads(out)[-1]["details"]["rectCount"] == 2

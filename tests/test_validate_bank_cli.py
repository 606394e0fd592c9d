import json
from pathlib import Path

from scripts import validate_bank

DATA_DIR = Path(__file__).resolve().parents[1] / "data" / "questions"


def test_cli_reports_coverage_for_directory(tmp_path, capsys):
    output = tmp_path / "report.json"
    exit_code = validate_bank.main(["--directory", str(DATA_DIR), "--grade", "1", "--output", str(output)])

    assert exit_code == 0
    report = json.loads(output.read_text(encoding="utf-8"))
    assert report["total_questions"] == 10
    assert report["total_sets"] == 3
    assert report["subjects"]["math"]["types"]["mcq_multi"] == 1
    assert report["unreferenced_questions"] == []
    assert report["problems"] == []
    assert json.loads(capsys.readouterr().out) == report


def test_cli_lists_problems_for_invalid_bundle(tmp_path, capsys):
    bundle = tmp_path / "bad.json"
    bundle.write_text(
        json.dumps(
            {
                "questions": [],
                "sets": [{"id": "s1", "title": "Broken", "subject": "math", "questionIds": ["ghost"]}],
            }
        ),
        encoding="utf-8",
    )

    exit_code = validate_bank.main([str(bundle)])

    assert exit_code == 1
    report = json.loads(capsys.readouterr().out)
    assert report["problems"] == ['Set "Broken" references non-existent questions: ghost']


def test_cli_missing_file(tmp_path):
    assert validate_bank.main([str(tmp_path / "nope.json")]) == 2

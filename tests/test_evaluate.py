import json

from shelfscan.cli import main
from shelfscan.core.models import BookCandidate, FinalResults, ValidatedBook, ValidationResult
from shelfscan.io.evaluate import (
    GroundTruthBook,
    build_report_data,
    calculate_accuracy,
    load_ground_truth,
    render_markdown,
)


def _book(title, author, status="unvalidated", validated_title=None, authors=()):
    return ValidatedBook(
        candidate=BookCandidate(title=title, author=author, subtitle=None, confidence=0.5),
        validation=ValidationResult(validated=status == "validated", title=validated_title, authors=tuple(authors)),
        status=status,
        match_score=0.0,
    )


def test_accuracy_matches_title_or_author_containment() -> None:
    books = [
        _book("GREAT GATSBY", None),
        _book("Eyre", "Charlotte Brontë"),
        _book("Unknown", "Tolkien"),
    ]
    truth = [
        GroundTruthBook("The Great Gatsby", ("F. Scott Fitzgerald",)),
        GroundTruthBook("Jane Eyre", ("Charlotte Brontë",)),
        GroundTruthBook("The Hobbit", ("J. R. R. Tolkien",)),
        GroundTruthBook("Moby-Dick", ("Herman Melville",)),
    ]
    assert calculate_accuracy(books, truth) == 0.75
    assert calculate_accuracy(books, []) == 0.0


def test_ground_truth_formats() -> None:
    assert load_ground_truth([{"title": "1984", "author": "George Orwell"}]) == [GroundTruthBook("1984", ("George Orwell",))]
    assert load_ground_truth({"books": [{"title": "1984", "authors": ["Orwell"]}, {"authors": ["x"]}]}) == [
        GroundTruthBook("1984", ("Orwell",))
    ]


def test_report_renders() -> None:
    results = FinalResults("j1", "t", (_book("1984", "George Orwell", "validated", "1984", ["George Orwell"]),))
    md = render_markdown(build_report_data(results, [GroundTruthBook("1984", ("George Orwell",))]))
    assert "Accuracy: 100.0%" in md
    assert "Validated: 1/1 (100.0%)" in md
    assert "| 1984 | George Orwell | validated | 0.00 |  |" in md


def test_evaluate_command(tmp_path, capsys) -> None:
    results = FinalResults("j1", "t", (_book("1984", "George Orwell"),))
    res_path = tmp_path / "final-results.json"
    res_path.write_text(json.dumps(results.to_dict()), encoding="utf-8")
    truth_path = tmp_path / "truth.json"
    truth_path.write_text(json.dumps([{"title": "1984", "authors": ["George Orwell"]}, {"title": "Emma"}]), encoding="utf-8")
    report = tmp_path / "report.md"

    main(["--env", str(tmp_path / "missing.env"), "evaluate", str(res_path), str(truth_path), "--report", str(report)])

    assert capsys.readouterr().out.strip().splitlines()[-1] == "0.5000"
    assert report.read_text(encoding="utf-8").startswith("# Shelf Scan Report")


def _resolve_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("RESULTS_DIR", str(tmp_path / "results"))
    monkeypatch.setenv("ENABLE_GOOGLE_BOOKS", "0")
    monkeypatch.setenv("ENABLE_OPENLIBRARY", "0")
    monkeypatch.delenv("SCORING_CONFIG", raising=False)


def _run_resolve(tmp_path, name, candidates, *extra):
    text = tmp_path / f"{name}.txt"
    text.write_text("\n".join(c["title"].upper() for c in candidates) + "\n", encoding="utf-8")
    reply = tmp_path / f"{name}.reply.json"
    reply.write_text(json.dumps({"candidates": candidates}), encoding="utf-8")
    out = tmp_path / f"{name}.out.json"
    main(["--env", str(tmp_path / "missing.env"), "resolve", str(text), "--reply", str(reply), "--out", str(out), *extra])
    return json.loads(out.read_text(encoding="utf-8"))


def test_resolve_command_with_saved_reply(tmp_path, monkeypatch) -> None:
    _resolve_env(tmp_path, monkeypatch)

    data = _run_resolve(tmp_path, "ocr", [{"title": "Transformer", "author": "Nick Lane", "confidence": 0.8}])

    assert data["jobId"]
    assert data["totalCandidates"] == 1
    assert data["books"][0]["status"] == "unvalidated"
    assert data["books"][0]["confidence"] == 0.4


def test_resolve_runs_do_not_reuse_each_others_outputs(tmp_path, monkeypatch) -> None:
    _resolve_env(tmp_path, monkeypatch)

    first = _run_resolve(tmp_path, "hobbit", [{"title": "The Hobbit", "author": "Tolkien", "confidence": 0.9}])
    second = _run_resolve(tmp_path, "dune", [{"title": "Dune", "author": "Frank Herbert", "confidence": 0.9}])

    assert first["jobId"] != second["jobId"]
    assert [b["title"] for b in second["books"]] == ["Dune"]


def test_resolve_with_explicit_job_id_resumes_stored_outputs(tmp_path, monkeypatch) -> None:
    _resolve_env(tmp_path, monkeypatch)

    _run_resolve(tmp_path, "hobbit", [{"title": "The Hobbit", "author": "Tolkien", "confidence": 0.9}], "--job-id", "shelf-1")
    again = _run_resolve(tmp_path, "dune", [{"title": "Dune", "author": "Frank Herbert", "confidence": 0.9}], "--job-id", "shelf-1")

    assert again["jobId"] == "shelf-1"
    assert [b["title"] for b in again["books"]] == ["The Hobbit"]

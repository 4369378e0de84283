from pathlib import Path

import pytest

from labsys.apps import indexer_map, indexer_reduce, wc_map, wc_reduce
from labsys.sequential import main, run_sequential


def _lines(path):
    return Path(path).read_text(encoding="utf-8").splitlines()


def test_word_count_worked_example(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("in.txt").write_text("a b a")
    out = run_sequential(wc_map, wc_reduce, ["in.txt"])
    assert out == "mr-out-0"
    assert Path(out).read_text() == "a 2\nb 1\n"


def test_output_keys_sorted_and_counts_total(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("one.txt").write_text("zebra apple, mango! apple")
    Path("two.txt").write_text("mango zebra zebra")
    out = run_sequential(wc_map, wc_reduce, ["one.txt", "two.txt"], output="result")
    lines = _lines(out)
    keys = [line.split(" ")[0] for line in lines]
    assert keys == sorted(keys)
    assert len(keys) == len(set(keys))
    assert sum(int(line.split(" ")[1]) for line in lines) == 7


def test_indexer_counts_match_documents(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("d1").write_text("red blue")
    Path("d2").write_text("blue green blue")
    out = run_sequential(indexer_map, indexer_reduce, ["d1", "d2"])
    table = {}
    for line in _lines(out):
        key, count, docs = line.split(" ")
        table[key] = docs.split(",")
        assert int(count) == len(docs.split(","))
    assert table["blue"] == ["d1", "d2"]
    assert table["red"] == ["d1"]


def test_empty_input_gives_empty_output(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("empty.txt").write_text("")
    out = run_sequential(wc_map, wc_reduce, ["empty.txt"])
    assert Path(out).read_text() == ""


def test_missing_input_raises(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        run_sequential(wc_map, wc_reduce, ["absent.txt"])


def test_main_runs_named_app(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    Path("in.txt").write_text("hello hello world")
    assert main(["wc", "in.txt"]) == 0
    assert _lines("mr-out-0") == ["hello 2", "world 1"]


def test_main_usage_errors(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main([]) == 1
    assert main(["wc"]) == 1
    assert not Path("mr-out-0").exists()


def test_main_unknown_app(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    Path("in.txt").write_text("x")
    assert main(["nosuchapp", "in.txt"]) == 1
    assert "cannot load plugin nosuchapp" in capsys.readouterr().err


def test_main_missing_file(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["wc", "gone.txt"]) == 1
    assert "cannot open gone.txt" in capsys.readouterr().err
import io

import pytest

from kinstallutils.helmignore import HELM_IGNORE, Rules, empty, parse, parse_file


def test_empty_rules_ignore_nothing():
    rules = empty()
    assert len(rules) == 0
    assert rules.ignore("anything.txt", False) is False


def test_parse_skips_blank_lines_and_comments():
    rules = parse("# comment\n\n   \n*.txt\nmast/\n")
    assert len(rules) == 2


def test_parse_accepts_line_iterables():
    rules = parse(io.StringIO("*.txt\n*.md\n"))
    assert len(rules) == 2
    assert rules.ignore("readme.md", False) is True


def test_double_star_rejected():
    with pytest.raises(ValueError, match="double-star"):
        parse("templates/**/a.yaml")


@pytest.mark.parametrize("rule", ["[abc", "foo\\", "[]", "[a-]"])
def test_malformed_patterns_rejected(rule):
    with pytest.raises(ValueError):
        parse(rule)


@pytest.mark.parametrize("path", ["", ".", "./"])
def test_never_ignores_current_directory(path):
    rules = parse("*")
    assert rules.ignore(path, True) is False


def test_pattern_without_slash_matches_basename():
    rules = parse("*.txt")
    assert rules.ignore("helm.txt", False) is True
    assert rules.ignore("dir/nested/helm.txt", False) is True
    assert rules.ignore("helm.yaml", False) is False


def test_structural_pattern_matches_whole_path():
    rules = parse("templates/*.yaml")
    assert rules.ignore("templates/a.yaml", False) is True
    assert rules.ignore("other/templates/a.yaml", False) is False
    assert rules.ignore("templates/sub/a.yaml", False) is False


def test_rooted_pattern():
    rules = parse("/foo.txt")
    assert rules.ignore("foo.txt", False) is True
    assert rules.ignore("a/foo.txt", False) is False


def test_directory_only_rule():
    rules = parse("mast/")
    assert rules.ignore("mast", True) is True
    assert rules.ignore("mast", False) is False


def test_negated_rule_ignores_non_matches():
    rules = parse("!keep.txt")
    assert rules.ignore("keep.txt", False) is False
    assert rules.ignore("other.txt", False) is True


def test_negated_directory_rule_on_file():
    rules = parse("!keep/")
    assert rules.ignore("keep", False) is True
    assert rules.ignore("keep", True) is False


def test_character_class_and_escape():
    rules = parse("[ab].txt\n\\*.md\n")
    assert rules.ignore("a.txt", False) is True
    assert rules.ignore("c.txt", False) is False
    assert rules.ignore("*.md", False) is True
    assert rules.ignore("x.md", False) is False


def test_negated_character_class():
    rules = parse("[^a].txt")
    assert rules.ignore("b.txt", False) is True
    assert rules.ignore("a.txt", False) is False


def test_question_mark_matches_single_character():
    rules = parse("file?.txt")
    assert rules.ignore("file1.txt", False) is True
    assert rules.ignore("file12.txt", False) is False


def test_defaults_ignore_template_dotfiles():
    rules = Rules()
    rules.add_defaults()
    assert len(rules) == 1
    assert rules.ignore("templates/.hidden", False) is True
    assert rules.ignore("templates/visible.yaml", False) is False
    assert rules.ignore("templates/.", False) is False


def test_parse_file(tmp_path):
    path = tmp_path / HELM_IGNORE
    path.write_text("# ignore backups\n*.bak\n", encoding="utf-8")
    rules = parse_file(path)
    assert len(rules) == 1
    assert rules.ignore("values.bak", False) is True
    assert rules.ignore("values.yaml", False) is False


def test_parse_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        parse_file(tmp_path / "absent")
import re
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent


def test_readme_is_a_package_readme():
    pyproject = (ROOT / "pyproject.toml").read_text(encoding="utf-8")
    match = re.search(r'^readme\s*=\s*"([^"]+)"', pyproject, flags=re.MULTILINE)
    assert match is not None
    readme = ROOT / match.group(1)
    assert readme.name == "README.md"
    assert readme.read_text(encoding="utf-8").startswith("# einloop")

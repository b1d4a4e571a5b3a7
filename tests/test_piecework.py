import allure
from click.testing import CliRunner

from piecework import __version__
from piecework.main import piecework

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("CLI Operations"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(piecework, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output

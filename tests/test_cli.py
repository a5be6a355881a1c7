import pandas as pd
import yaml
from click.testing import CliRunner

from main import cli


def test_generate_config(tmp_path):
    runner = CliRunner()
    output = tmp_path / "config.yaml"
    result = runner.invoke(cli, ["generate-config", "-o", str(output)])
    assert result.exit_code == 0
    data = yaml.safe_load(output.read_text())
    assert data["charging"]["deadline"] == "07:00"

    result = runner.invoke(cli, ["generate-config", "-o", str(output)])
    assert result.exit_code != 0
    assert "already exists" in result.output


def test_invalid_config_is_reported(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("charging:\n  max_rate_kw: -1\nvehicle:\n  provider: simulated\n")
    result = CliRunner().invoke(cli, ["-c", str(path), "plan"])
    assert result.exit_code != 0
    assert "max_rate_kw" in result.output


def test_simulate(tmp_path):
    signals = tmp_path / "signals.csv"
    index = pd.date_range("2024-03-01 18:00", periods=24, freq="30min", tz="UTC", name="time")
    rates = [300.0] * 4 + [100.0] * 8 + [300.0] * 12
    pd.DataFrame({"forecast": rates, "actual": rates}, index=index).to_csv(signals)

    config = tmp_path / "config.yaml"
    config.write_text(yaml.safe_dump({
        "log_level": "WARNING",
        "charging": {"deadline": "2024-03-02T06:00Z", "energy_required_kwh": 7.2, "max_rate_kw": 7.2},
        "vehicle": {"provider": "simulated"},
    }))
    output = tmp_path / "backtest.csv"
    result = CliRunner().invoke(cli, ["-c", str(config), "simulate", "--signals", str(signals),
                                      "-o", str(output)])
    assert result.exit_code == 0, result.output
    assert "met_target" in result.output
    assert len(pd.read_csv(output)) > 0

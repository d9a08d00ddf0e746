"""Tests for YAML configuration loading and overrides."""
from pathlib import Path
import pytest
from pipeline_config import PipelineConfig, config_from_dict, load_config
from schemas import ConfigError

SHIPPED_CONFIG = Path(__file__).parents[1] / "config" / "pipeline.yaml"


def test_defaults_are_valid():
    config = load_config()
    assert config == PipelineConfig()
    assert config.healthy_prefix == "HC"
    assert config.go_gene_selection == "significant"
    assert config.gsea_seed == 42


def test_shipped_config_loads():
    config = load_config(str(SHIPPED_CONFIG))
    assert config.input_path == "data/HC_LS_FPKM.csv.gz"
    assert config.deg_workbook == "HC_vs_LS_deg.xlsx"
    assert config.gsea_permutations == 10000
    assert config.sample_sheet is None


def test_overrides_take_precedence(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("output_dir: from_file\ninput_path: a.csv.gz\n")
    config = load_config(str(path), {"output_dir": "from_cli"})
    assert config.output_dir == "from_cli"
    assert config.input_path == "a.csv.gz"
    assert config.output_path == Path("from_cli")


def test_none_overrides_ignored(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("input_path: a.csv.gz\n")
    config = load_config(str(path), {"input_path": None, "sample_sheet": None})
    assert config.input_path == "a.csv.gz"


def test_unknown_key(tmp_path):
    path = tmp_path / "run.yaml"
    path.write_text("input_path: a.csv.gz\npadj_cutoff: 0.1\n")
    with pytest.raises(ConfigError, match="padj_cutoff"):
        load_config(str(path))


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(str(tmp_path / "missing.yaml"))


def test_malformed_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("input_path: [unclosed\n")
    with pytest.raises(ConfigError, match="Malformed"):
        load_config(str(path))


def test_top_level_must_be_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(str(path))


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert load_config(str(path)) == PipelineConfig()


@pytest.mark.parametrize(
    "values",
    [
        {"go_gene_selection": "top100"},
        {"healthy_prefix": ""},
        {"healthy_label": "LS"},
        {"export_lfc_threshold": -1.0},
        {"gsea_permutations": 0},
        {"tsne_perplexity": 0},
        {"deg_workbook": "deg.csv"},
    ],
)
def test_invalid_values(values):
    with pytest.raises(ConfigError):
        config_from_dict(values)


def test_config_is_frozen():
    config = PipelineConfig()
    with pytest.raises(AttributeError):
        config.output_dir = "elsewhere"

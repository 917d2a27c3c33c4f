"""
test_main.py
-------------
Tests for the command-line entry point: CSV loading and output files.

Run from the project root:
    python -m pytest tests/test_main.py -v
"""

import sys
import os
import pytest
import pandas as pd

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import reset_config
import main


@pytest.fixture(autouse=True)
def reset_config_cache():
    reset_config()
    yield
    reset_config()


def _write_inputs(tmp_path, nodes=None):
    nodes = nodes if nodes is not None else pd.DataFrame([
        {"node_id": "electronics", "parent_id": "", "url": "https://x.com/electronics",
         "path": "/electronics", "depth": 0, "product_count": 40, "title": "Electronics", "aliases": ""},
        {"node_id": "phones", "parent_id": "electronics", "url": "https://x.com/c/phones-landing",
         "path": "/electronics/phones", "depth": 1, "product_count": 12, "title": "Phones",
         "aliases": "Handsets|Mobiles"},
    ])
    products = pd.DataFrame([
        {"product_id": "SKU-100", "url": "https://x.com/p/galaxy-s10", "node_id": "phones",
         "codes": "012345678905", "title": "Galaxy S10", "price": "500"},
    ])
    records = pd.DataFrame([
        {"source": "search", "identifier": "https://x.com/electronics/phones/?ref=ads", "date": "2024-06-10",
         "impressions": 1000, "clicks": 20, "position": 8},
        {"source": "analytics", "identifier": "https://x.com/electronics/phones/?ref=ads", "date": "2024-06-10",
         "sessions": 200, "revenue": 0, "transactions": 0},
        {"source": "pricing", "identifier": "012345678905", "date": "2024-06-10",
         "median_price": 600, "competitor_count": 4},
        {"source": "search", "identifier": "https://x.com/zzzz-qqqq-wwww-vvvv", "date": "2024-06-10",
         "impressions": 10, "clicks": 0},
    ])
    paths = {name: str(tmp_path / f"{name}.csv") for name in ("nodes", "products", "records")}
    nodes.to_csv(paths["nodes"], index=False)
    products.to_csv(paths["products"], index=False)
    records.to_csv(paths["records"], index=False)
    return paths


def _argv(paths, out_dir, *extra):
    return [
        "--nodes", paths["nodes"], "--products", paths["products"], "--records", paths["records"],
        "--tenant", "acme", "--start", "2024-06-01", "--end", "2024-06-30",
        "--output-dir", str(out_dir), *extra,
    ]


class TestLoaders:
    def test_load_nodes_splits_aliases(self, tmp_path):
        paths = _write_inputs(tmp_path)
        nodes = {n.node_id: n for n in main.load_nodes(paths["nodes"])}
        assert nodes["electronics"].parent_id is None
        assert nodes["phones"].aliases == ["Handsets", "Mobiles"]
        assert nodes["phones"].depth == 1

    def test_malformed_catalog_rows_skipped(self, tmp_path):
        nodes_path = tmp_path / "bad_nodes.csv"
        pd.DataFrame([
            {"node_id": "electronics", "parent_id": "", "path": "/electronics", "depth": "0"},
            {"node_id": "phones", "parent_id": "electronics", "path": "/electronics/phones", "depth": "one"},
            {"node_id": "", "parent_id": "", "path": "/orphan", "depth": "0"},
        ]).to_csv(nodes_path, index=False)
        products_path = tmp_path / "bad_products.csv"
        pd.DataFrame([
            {"product_id": "SKU-1", "node_id": "electronics", "price": "12.50"},
            {"product_id": "SKU-2", "node_id": "electronics", "price": "twelve"},
        ]).to_csv(products_path, index=False)

        assert [n.node_id for n in main.load_nodes(str(nodes_path))] == ["electronics"]
        assert [p.product_id for p in main.load_products(str(products_path))] == ["SKU-1"]

    def test_load_products_keeps_leading_zeros(self, tmp_path):
        paths = _write_inputs(tmp_path)
        product = main.load_products(paths["products"])[0]
        assert product.codes == ["012345678905"]
        assert product.price == 500.0

    def test_load_records_groups_by_source(self, tmp_path):
        paths = _write_inputs(tmp_path)
        grouped = main.load_records(paths["records"])
        assert len(grouped["search"]) == 2
        assert grouped["pricing"][0]["identifier"] == "012345678905"


class TestMain:
    def test_summary_prints_tenant_statistics(self, tmp_path, capsys):
        paths = _write_inputs(tmp_path)
        main.main(_argv(paths, tmp_path / "out"))
        printed = capsys.readouterr().out
        assert "Tenant Totals" in printed
        assert "clicks 20" in printed

    def test_writes_outputs(self, tmp_path):
        paths = _write_inputs(tmp_path)
        out_dir = tmp_path / "out"
        main.main(_argv(paths, out_dir))

        written = sorted(os.listdir(out_dir))
        for prefix in ("aggregated_metrics_", "opportunity_scores_", "unmatched_", "match_history_"):
            assert any(name.startswith(prefix) for name in written)

        unmatched_file = next(name for name in written if name.startswith("unmatched_"))
        unmatched = pd.read_csv(out_dir / unmatched_file)
        assert list(unmatched["identifier"]) == ["https://x.com/zzzz-qqqq-wwww-vvvv"]

    def test_inconsistent_catalog_exits_nonzero(self, tmp_path):
        nodes = pd.DataFrame([
            {"node_id": "phones", "parent_id": "ghost", "url": "", "path": "/phones", "depth": 1},
        ])
        paths = _write_inputs(tmp_path, nodes=nodes)
        with pytest.raises(SystemExit) as exc_info:
            main.main(_argv(paths, tmp_path / "out"))
        assert exc_info.value.code == 1

    def test_missing_input_exits_nonzero(self, tmp_path):
        paths = _write_inputs(tmp_path)
        paths["records"] = str(tmp_path / "nope.csv")
        with pytest.raises(SystemExit):
            main.main(_argv(paths, tmp_path / "out"))

    def test_baseline_history_runs_drift_monitor(self, tmp_path):
        paths = _write_inputs(tmp_path)
        first_out = tmp_path / "first"
        main.main(_argv(paths, first_out))
        history = next(name for name in os.listdir(first_out) if name.startswith("match_history_"))

        second_out = tmp_path / "second"
        main.main(_argv(paths, second_out, "--baseline-history", str(first_out / history)))
        assert not any(name.startswith("drift_report_") for name in os.listdir(second_out))

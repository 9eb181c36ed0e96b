"""
Unit tests for count preprocessing.

The edgeR wrappers are checked on small hand-made matrices whose results
follow from the published definitions; the service methods on the
synthetic cohort. Anything calling edgeR is skipped without R.
"""

import anndata
import numpy as np
import pandas as pd
import pytest

from her2seq.core.exceptions import NormalizationError, RBackendError
from her2seq.services.analysis.preprocessing_service import (
    PreprocessingError,
    PreprocessingService,
    aggregate_duplicates,
    calc_norm_factors,
    cpm,
    filter_by_expr_mask,
)
from tests.conftest import R_AVAILABLE, requires_r


@pytest.fixture
def service():
    return PreprocessingService()


@pytest.fixture
def composition_counts():
    """Two libraries that differ only in 10 strongly induced genes."""
    base = np.arange(10, 1010, 10, dtype=float)
    induced = base.copy()
    induced[:10] *= 10
    return np.column_stack([base, induced])


class TestAggregateDuplicates:
    def test_sums_rows_in_first_seen_order(self):
        counts = pd.DataFrame(
            {"S1": [1, 2, 3, 4], "S2": [10, 20, 30, 40]},
            index=["ENSG1", "ENSG2", "ENSG3", "ENSG4"],
        )
        aggregated, n_merged = aggregate_duplicates(counts, ["B", "A", "B", None])
        assert list(aggregated.index) == ["B", "A", "ENSG4"]
        assert aggregated.loc["B"].tolist() == [4, 40]
        assert n_merged == 1


@requires_r
class TestFilterByExprMask:
    lib_size = np.full(4, 1e6)

    def test_group_size_rule(self):
        # CPM cutoff is 10 / 1e6 * 1e6 = 10 in at least 2 samples
        counts = np.array([[20, 20, 0, 0], [5, 5, 5, 5], [20, 0, 0, 0]], dtype=float)
        keep = filter_by_expr_mask(counts, self.lib_size, group=["a", "a", "b", "b"])
        assert keep.tolist() == [True, False, False]

    def test_min_total_count(self):
        counts = np.array([[12, 12, 0, 0], [40, 40, 0, 0]], dtype=float)
        keep = filter_by_expr_mask(
            counts, self.lib_size, group=["a", "a", "b", "b"], min_total_count=30
        )
        assert keep.tolist() == [False, True]

    def test_without_group_every_sample_counts(self):
        counts = np.array([[20, 20, 20, 0], [20, 20, 20, 20]], dtype=float)
        keep = filter_by_expr_mask(counts, self.lib_size)
        assert keep.tolist() == [False, True]

    def test_design_leverage(self):
        # an intercept-only design needs every sample above the cutoff
        counts = np.array([[20, 20, 20, 0], [20, 20, 20, 20]], dtype=float)
        keep = filter_by_expr_mask(counts, self.lib_size, design=np.ones((4, 1)))
        assert keep.tolist() == [False, True]


@requires_r
class TestNormFactors:
    def test_scaled_libraries_get_unit_factors(self):
        base = np.arange(1, 101, dtype=float)
        counts = np.column_stack([base, base * 2, base * 3])
        np.testing.assert_allclose(calc_norm_factors(counts), 1.0, rtol=1e-8)

    def test_tmm_reference_values(self, composition_counts):
        # the untrimmed genes all have M = log2(N1 / N2), so the factors
        # equalise the effective library sizes
        lib = composition_counts.sum(axis=0)
        factors = calc_norm_factors(composition_counts)
        np.testing.assert_allclose(
            factors, [np.sqrt(lib[1] / lib[0]), np.sqrt(lib[0] / lib[1])], rtol=1e-8
        )
        assert lib[0] * factors[0] == pytest.approx(lib[1] * factors[1])

    def test_upper_quartile(self, composition_counts):
        factors = calc_norm_factors(composition_counts, method="upperquartile")
        assert np.prod(factors) == pytest.approx(1.0)

    def test_none(self, composition_counts):
        np.testing.assert_array_equal(calc_norm_factors(composition_counts, method="none"), 1.0)


class TestNormFactorArguments:
    def test_unknown_method(self, composition_counts):
        with pytest.raises(NormalizationError, match="Unknown normalisation method"):
            calc_norm_factors(composition_counts, method="RLE")

    def test_empty_library(self):
        with pytest.raises(NormalizationError, match="positive"):
            calc_norm_factors(np.array([[1.0, 0.0], [2.0, 0.0]]))


@requires_r
class TestCpm:
    def test_log_cpm_prior_count(self):
        counts = np.array([[0.0, 0.0], [96.0, 96.0]])
        lib = np.array([100.0, 100.0])
        values = cpm(counts, lib, log=True, prior_count=2)
        np.testing.assert_allclose(values[0], np.log2(2 / 104 * 1e6))
        np.testing.assert_allclose(values[1], np.log2(98 / 104 * 1e6))

    def test_cpm(self):
        counts = np.array([[1.0, 4.0], [3.0, 4.0]])
        values = cpm(counts, np.array([4.0, 8.0]))
        np.testing.assert_allclose(values, [[250000, 500000], [750000, 500000]])


@pytest.mark.skipif(R_AVAILABLE, reason="R is installed - testing unavailable scenario")
def test_edger_calls_without_r(composition_counts):
    with pytest.raises(RBackendError, match="edgeR"):
        calc_norm_factors(composition_counts)


class TestAggregateGenes:
    def test_aggregate(self, service, two_group_adata, mock_config):
        adata, stats, ir = service.aggregate_genes(two_group_adata, "gene_name")
        assert stats["n_rows_merged"] == mock_config.n_duplicate_symbols
        assert adata.n_vars == two_group_adata.n_vars - mock_config.n_duplicate_symbols
        assert adata.var_names.is_unique
        assert "gene_id" in adata.var.columns
        assert adata.X.sum() == pytest.approx(two_group_adata.X.sum())
        assert ir.operation == "tidybulk.aggregate_duplicates"

    def test_missing_column(self, service, two_group_adata):
        with pytest.raises(PreprocessingError, match="not found"):
            service.aggregate_genes(two_group_adata, "symbol")


class TestFilterByExpr:
    @requires_r
    def test_removes_undetected_genes(self, service, two_group_adata, mock_config):
        adata, stats, ir = service.filter_by_expr(two_group_adata, group_key="her2_status")
        assert stats["n_genes_removed"] >= mock_config.n_zero_genes
        assert (np.asarray(adata.X).sum(axis=0) > 0).all()
        assert stats["cpm_cutoff"] == pytest.approx(10 / stats["median_lib_size"] * 1e6)
        assert ir.operation == "edger.filterByExpr"

    @requires_r
    def test_everything_removed(self, service, two_group_adata):
        with pytest.raises(PreprocessingError, match="removed every gene"):
            service.filter_by_expr(two_group_adata, min_count=1e9)

    def test_missing_group_key(self, service, two_group_adata):
        with pytest.raises(PreprocessingError, match="Group column"):
            service.filter_by_expr(two_group_adata, group_key="subtype")

    def test_zero_median_library(self, service):
        adata = anndata.AnnData(X=np.zeros((3, 2)))
        with pytest.raises(PreprocessingError, match="Median library size"):
            service.filter_by_expr(adata)


class TestFilterByQuantile:
    @requires_r
    def test_mean_quantile(self, service, two_group_adata):
        adata, stats, _ = service.filter_by_quantile(two_group_adata, mean_quantile=0.5)
        assert stats["n_genes_after"] <= two_group_adata.n_vars // 2 + 1
        assert stats["var_cutoff"] is None

    @requires_r
    def test_variance_quantile(self, service, two_group_adata):
        _, stats, _ = service.filter_by_quantile(
            two_group_adata, mean_quantile=0.1, var_quantile=0.5
        )
        assert stats["var_cutoff"] is not None

    @pytest.mark.parametrize("quantile", [-0.1, 1.0, 1.5])
    def test_invalid_quantile(self, service, two_group_adata, quantile):
        with pytest.raises(PreprocessingError, match="must be in"):
            service.filter_by_quantile(two_group_adata, mean_quantile=quantile)


class TestNormalize:
    @requires_r
    def test_layers_and_factors(self, service, two_group_adata):
        adata, stats, ir = service.normalize(two_group_adata)
        obs = adata.obs
        np.testing.assert_allclose(obs["eff_lib_size"], obs["lib_size"] * obs["norm_factor"])
        assert np.prod(obs["norm_factor"]) == pytest.approx(1.0)
        np.testing.assert_allclose(
            adata.layers["cpm"].sum(axis=1), 1e6 / obs["norm_factor"].to_numpy()
        )
        assert adata.layers["logcpm"].shape == adata.shape
        assert adata.uns["normalization"]["method"] == "TMM"
        assert ir.get_papermill_parameters() == {"method": "TMM"}
        assert "cpm" not in two_group_adata.layers

    def test_unknown_method(self, service, two_group_adata):
        with pytest.raises(NormalizationError):
            service.normalize(two_group_adata, method="quantile")

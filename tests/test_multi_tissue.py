"""File-level tests for MultiTissueNormalizer.

Tests write small synthetic tissue compartments to disk, run the normaliser
end to end and check the corrected volumes, the optional bias field / mask
outputs and the metadata stored in each output header.
"""

import pytest
import numpy as np
import nibabel as nib
from pathlib import Path

from mtbin.normalization.config import NormalizationConfig
from mtbin.normalization.exceptions import EmptyMaskError, InputValidationError
from mtbin.normalization.io import SCALE_FACTOR_KEY, read_keyval
from mtbin.normalization.multi_tissue import (
    TISSUE_SCALE_FACTOR_KEY,
    MultiTissueNormalizer,
    split_tissue_arguments,
)

NORM_VALUE = 0.282094
SHAPE = (10, 10, 10)


def _affine():
    affine = np.diag([2.0, 2.0, 2.0, 1.0])
    affine[:3, 3] = -9.0
    return affine


def _tissue_fields(shape=SHAPE):
    """Two complementary checkerboard compartments under a smooth bias."""
    ijk = np.indices(shape)
    x, y, z = (2.0 * ijk - 9.0)
    bias = np.exp(0.02 * x - 0.015 * y + 0.01 * z + 0.001 * x * y)
    fraction = np.where(ijk.sum(axis=0) % 2 == 0, 0.8, 0.2)
    return [2.0 * fraction * bias, 0.5 * (1.0 - fraction) * bias]


def _save(data, path, dtype=np.float32):
    nib.save(nib.Nifti1Image(np.asarray(data, dtype=dtype), _affine()), str(path))
    return path


@pytest.fixture
def tissue_files(tmp_path):
    """Two tissue volumes and a full mask on disk."""
    wm, csf = _tissue_fields()
    inputs = [_save(wm, tmp_path / "wm.nii.gz"), _save(csf, tmp_path / "csf.nii.gz")]
    mask = _save(np.ones(SHAPE), tmp_path / "mask.nii.gz", dtype=np.uint8)
    outputs = [tmp_path / "out" / "wm_norm.nii.gz", tmp_path / "out" / "csf_norm.nii.gz"]
    return inputs, outputs, mask


class TestSplitTissueArguments:
    """Tests for the alternating input/output argument list."""

    def test_pairs_are_split_in_order(self):
        inputs, outputs = split_tissue_arguments(["a.nii", "a_out.nii", "b.nii", "b_out.nii"])
        assert inputs == [Path("a.nii"), Path("b.nii")]
        assert outputs == [Path("a_out.nii"), Path("b_out.nii")]

    def test_odd_argument_count_rejected(self):
        with pytest.raises(InputValidationError, match="must be even"):
            split_tissue_arguments(["a.nii", "a_out.nii", "b.nii"])

    def test_single_tissue_rejected(self):
        with pytest.raises(InputValidationError, match="two tissue types"):
            split_tissue_arguments(["a.nii", "a_out.nii"])


class TestMultiTissueNormalizer:
    """End-to-end runs of the normaliser on NIfTI files."""

    def test_writes_corrected_tissues_and_extras(self, tissue_files, tmp_path):
        inputs, outputs, mask = tissue_files
        bias_path = tmp_path / "out" / "bias.nii.gz"
        check_path = tmp_path / "out" / "check.nii.gz"

        normalizer = MultiTissueNormalizer(NormalizationConfig(max_iter=4))
        results = normalizer.execute(
            inputs, outputs,
            mask_path=mask,
            bias_output_path=bias_path,
            mask_output_path=check_path,
        )

        for path in outputs + [bias_path, check_path]:
            assert path.exists()
        assert results["outputs"]["tissues"] == [str(p) for p in outputs]
        assert results["outputs"]["bias_field"] == str(bias_path)
        assert results["outputs"]["mask"] == str(check_path)

        bias = np.asarray(nib.load(str(bias_path)).dataobj, dtype=np.float64)
        assert bias.shape == SHAPE
        assert np.all(bias > 0)

        check = np.asarray(nib.load(str(check_path)).dataobj)
        assert check.dtype == np.uint8
        assert set(np.unique(check)) <= {0, 1}
        assert int(check.sum()) == results["n_active_voxels"]

        applied = results["applied_scale_factors"]
        for j, (input_path, output_path) in enumerate(zip(inputs, outputs)):
            original = np.asarray(nib.load(str(input_path)).dataobj, dtype=np.float64)
            corrected = np.asarray(nib.load(str(output_path)).dataobj, dtype=np.float64)
            np.testing.assert_allclose(corrected, applied[j] * original / bias, rtol=1e-5)

    def test_output_header_records_scale_factors(self, tissue_files):
        inputs, outputs, mask = tissue_files

        results = MultiTissueNormalizer(NormalizationConfig(max_iter=3)).execute(
            inputs, outputs, mask_path=mask
        )

        for j, output_path in enumerate(outputs):
            keyval = read_keyval(nib.load(str(output_path)))
            assert float(keyval[SCALE_FACTOR_KEY]) == pytest.approx(
                results["applied_scale_factors"][j]
            )
            assert float(keyval[TISSUE_SCALE_FACTOR_KEY]) == pytest.approx(
                results["scale_factors"][j]
            )

    def test_joint_mode_writes_same_factor_to_every_tissue(self, tissue_files):
        inputs, outputs, mask = tissue_files

        MultiTissueNormalizer(NormalizationConfig(max_iter=3)).execute(
            inputs, outputs, mask_path=mask
        )

        factors = {read_keyval(nib.load(str(p)))[SCALE_FACTOR_KEY] for p in outputs}
        assert len(factors) == 1

    def test_independent_mode_normalises_summed_tissues(self, tissue_files):
        inputs, outputs, mask = tissue_files

        config = NormalizationConfig(max_iter=6, independent=True)
        MultiTissueNormalizer(config).execute(inputs, outputs, mask_path=mask)

        total = sum(
            np.asarray(nib.load(str(p)).dataobj, dtype=np.float64) for p in outputs
        )
        np.testing.assert_allclose(total, NORM_VALUE, rtol=1e-3)

    def test_four_dimensional_inputs_corrected_across_volumes(self, tmp_path):
        wm, csf = _tissue_fields()
        weights = np.array([1.0, 0.3, -0.1])
        inputs = [
            _save(wm[..., None] * weights, tmp_path / "wm.nii.gz"),
            _save(csf[..., None] * weights, tmp_path / "csf.nii.gz"),
        ]
        mask = _save(np.ones(SHAPE), tmp_path / "mask.nii.gz", dtype=np.uint8)
        outputs = [tmp_path / "wm_norm.nii.gz", tmp_path / "csf_norm.nii.gz"]
        bias_path = tmp_path / "bias.nii.gz"

        results = MultiTissueNormalizer(NormalizationConfig(max_iter=3)).execute(
            inputs, outputs, mask_path=mask, bias_output_path=bias_path
        )

        bias = np.asarray(nib.load(str(bias_path)).dataobj, dtype=np.float64)
        applied = results["applied_scale_factors"]
        for j, (input_path, output_path) in enumerate(zip(inputs, outputs)):
            original = np.asarray(nib.load(str(input_path)).dataobj, dtype=np.float64)
            corrected = np.asarray(nib.load(str(output_path)).dataobj, dtype=np.float64)
            assert corrected.shape == SHAPE + (3,)
            np.testing.assert_allclose(
                corrected, applied[j] * original / bias[..., None], rtol=1e-5, atol=1e-7
            )

    def test_existing_output_blocks_run_without_writing(self, tissue_files):
        inputs, outputs, mask = tissue_files
        outputs[1].parent.mkdir(parents=True)
        outputs[1].write_bytes(b"keep")

        with pytest.raises(FileExistsError, match="--force"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs, mask_path=mask
            )

        assert not outputs[0].exists()
        assert outputs[1].read_bytes() == b"keep"

    def test_force_overwrites_existing_output(self, tissue_files):
        inputs, outputs, mask = tissue_files
        outputs[1].parent.mkdir(parents=True)
        outputs[1].write_bytes(b"stale")

        MultiTissueNormalizer(NormalizationConfig(max_iter=2)).execute(
            inputs, outputs, mask_path=mask, allow_overwrite=True
        )

        assert nib.load(str(outputs[1])).shape == SHAPE

    def test_empty_mask_writes_nothing(self, tissue_files, tmp_path):
        inputs, outputs, _ = tissue_files
        empty = _save(np.zeros(SHAPE), tmp_path / "empty.nii.gz", dtype=np.uint8)
        bias_path = tmp_path / "out" / "bias.nii.gz"

        with pytest.raises(EmptyMaskError):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs, mask_path=empty, bias_output_path=bias_path
            )

        assert not any(p.exists() for p in outputs + [bias_path])

    def test_dimension_mismatch_rejected(self, tissue_files, tmp_path):
        inputs, outputs, mask = tissue_files
        inputs[1] = _save(np.ones((10, 10, 9)), tmp_path / "small.nii.gz")

        with pytest.raises(InputValidationError, match="Dimension mismatch"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs, mask_path=mask
            )

        assert not any(p.exists() for p in outputs)

    def test_mask_dimension_mismatch_rejected(self, tissue_files, tmp_path):
        inputs, outputs, _ = tissue_files
        mask = _save(np.ones((10, 9, 10)), tmp_path / "mask_small.nii.gz", dtype=np.uint8)

        with pytest.raises(InputValidationError, match="mask"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs, mask_path=mask
            )

    def test_missing_input_raises(self, tissue_files, tmp_path):
        inputs, outputs, mask = tissue_files
        inputs[0] = tmp_path / "missing.nii.gz"

        with pytest.raises(FileNotFoundError):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs, mask_path=mask
            )

    def test_duplicate_outputs_rejected(self, tissue_files):
        inputs, outputs, mask = tissue_files

        with pytest.raises(InputValidationError, match="distinct"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, [outputs[0], outputs[0]], mask_path=mask
            )

    def test_bias_output_cannot_replace_input_even_with_force(self, tissue_files):
        inputs, outputs, mask = tissue_files
        original = inputs[0].read_bytes()

        with pytest.raises(InputValidationError, match="overwrite an input"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, outputs,
                mask_path=mask,
                allow_overwrite=True,
                bias_output_path=inputs[0],
            )

        assert inputs[0].read_bytes() == original
        assert not any(p.exists() for p in outputs)

    def test_tissue_output_cannot_replace_mask(self, tissue_files):
        inputs, outputs, mask = tissue_files
        original = mask.read_bytes()

        with pytest.raises(InputValidationError, match="overwrite an input"):
            MultiTissueNormalizer(NormalizationConfig()).execute(
                inputs, [outputs[0], mask], mask_path=mask, allow_overwrite=True
            )

        assert mask.read_bytes() == original
        assert not outputs[0].exists()

    def test_visualize_writes_png(self, tissue_files, tmp_path):
        inputs, outputs, mask = tissue_files
        normalizer = MultiTissueNormalizer(NormalizationConfig(max_iter=2))
        results = normalizer.execute(inputs, outputs, mask_path=mask)

        viz_path = tmp_path / "viz" / "mtbin.png"
        normalizer.visualize(inputs, outputs, viz_path, result=results["result"])

        assert viz_path.exists()
        assert viz_path.stat().st_size > 0

    def test_visualize_requires_result(self, tissue_files, tmp_path):
        inputs, outputs, _ = tissue_files

        with pytest.raises(ValueError, match="result"):
            MultiTissueNormalizer(NormalizationConfig()).visualize(
                inputs, outputs, tmp_path / "viz.png"
            )

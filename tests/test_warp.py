# -*- coding: utf-8 -*-
"""
Tests for warping images through deformations.
"""

import numpy as np
import pytest

from deformable_registration import (
    AffineTransform,
    CancellationToken,
    GridDeformation,
    ImageSampler,
    OperationCancelled,
    ShapeError,
    WarpedArray,
    translate,
    warp,
    warp_frames,
    warp_into,
    warpgrid,
)
from deformable_registration.phantoms import checkerboard, random_deformation, shepp_logan_2d


def _shift(shape, gridsize, displacement):
    u = np.stack([np.full(gridsize, float(d)) for d in displacement])
    return GridDeformation(u, shape)


class TestWarp:
    """Materializing warped images."""

    def test_identity_3x3(self):
        img = np.arange(9, dtype=np.float64).reshape(3, 3)
        phi = GridDeformation(np.zeros((2, 3, 3)), ([1, 2, 3], [1, 2, 3]))
        np.testing.assert_array_equal(warp(img, phi), img)
        print("✓ Zero deformation leaves a 3x3 image unchanged")

    def test_identity_phantom(self):
        img = shepp_logan_2d(32)
        phi = _shift(img.shape, (4, 4), (0, 0))
        out = warp(img, phi)
        assert out.dtype == np.float32
        np.testing.assert_allclose(out, img, atol=1e-6)
        print("✓ Identity warp reproduces the phantom")

    def test_integer_shift(self):
        rng = np.random.default_rng(0)
        img = rng.random((12, 10))
        out = warp(img, _shift(img.shape, (3, 3), (1, 0)))
        np.testing.assert_allclose(out[:-1], img[1:], atol=1e-12)
        assert np.all(np.isnan(out[-1]))
        print("✓ Shifting coordinates by +1 moves the image up one row, NaN fill")

    def test_shift_matches_translate(self):
        img = checkerboard((16, 16), square=4)
        out = warp(img, _shift(img.shape, (3, 3), (2, -3)))
        np.testing.assert_allclose(out, translate(img, (2, -3)), atol=1e-6, equal_nan=True)
        print("✓ Integer warps of a checkerboard match translate")

    def test_integer_image_is_float32(self):
        img = np.arange(16, dtype=np.uint8).reshape(4, 4)
        out = warp(img, _shift(img.shape, (2, 2), (0, 0)))
        assert out.dtype == np.float32
        np.testing.assert_allclose(out, img)
        print("✓ Integer images are warped to float32")

    def test_warp_into_shape_check(self):
        img = np.zeros((8, 8))
        phi = _shift(img.shape, (2, 2), (0, 0))
        with pytest.raises(ShapeError):
            warp_into(np.zeros((8, 7)), img, phi)
        dest = np.empty((8, 8))
        assert warp_into(dest, img, phi) is dest
        print("✓ warp_into requires matching destination shape")

    def test_affine_pre_transform(self):
        rng = np.random.default_rng(1)
        img = rng.random((9, 9))
        tform = AffineTransform(np.eye(2), [0.0, 1.0])
        out = warp(img, _shift(img.shape, (2, 2), (0, 0)), tform=tform)
        np.testing.assert_allclose(out[:, :-1], img[:, 1:], atol=1e-12)
        print("✓ Affine transform is applied before the deformation")


class TestWarpedArray:
    """Lazy views."""

    def test_indexing(self):
        rng = np.random.default_rng(2)
        img = rng.random((10, 10))
        W = WarpedArray(img, _shift(img.shape, (3, 3), (1, 0)))
        assert W.shape == (10, 10)
        assert W.phi.is_interpolating
        assert np.isclose(W[2, 3], img[3, 3])
        np.testing.assert_allclose(W[4, :], img[5, :])
        np.testing.assert_allclose(W[1:3, 2:5], img[2:4, 2:5])
        np.testing.assert_allclose(np.asarray(W)[:-1], img[1:])
        print("✓ WarpedArray indexes lazily like a numpy array")

    def test_fractional_sampling(self):
        img = np.arange(25, dtype=np.float64).reshape(5, 5)
        W = WarpedArray(ImageSampler(img), _shift(img.shape, (2, 2), (0.5, 0)))
        # W at 1-based (1, 1) samples img at (1.5, 1), between rows 0 and 1
        np.testing.assert_allclose(W.sample(np.array([[1.0, 1.0]])), [2.5])
        print("✓ Fractional coordinates are linearly interpolated")

    def test_dimension_mismatch(self):
        with pytest.raises(ShapeError):
            WarpedArray(np.zeros((4, 4, 4)), _shift((4, 4), (2, 2), (0, 0)))
        print("✓ Deformation and image must have the same dimensionality")


class TestWarpFrames:
    """Streaming frame-wise warps."""

    def _data(self):
        rng = np.random.default_rng(3)
        frames = rng.random((5, 16, 16)).astype(np.float32)
        us = np.stack([
            random_deformation((16, 16), (3, 3), max_displacement=1.5, seed=i).u
            for i in range(5)
        ])
        return frames, us

    def test_sequential_matches_warp(self):
        frames, us = self._data()
        sink = np.empty_like(frames)
        warp_frames(frames, us, sink)
        for i in range(len(frames)):
            np.testing.assert_allclose(sink[i], warp(frames[i], GridDeformation(us[i], (16, 16))),
                                       equal_nan=True)
        print("✓ Sequential frame warping matches per-frame warp")

    def test_threaded_matches_sequential(self):
        frames, us = self._data()
        seq = np.empty_like(frames)
        par = np.empty_like(frames)
        warp_frames(frames, us, seq)
        warp_frames(frames, us, par, nworkers=3)
        np.testing.assert_array_equal(np.isnan(seq), np.isnan(par))
        np.testing.assert_allclose(seq, par, equal_nan=True)
        print("✓ Threaded and sequential frame warping agree")

    def test_callable_sink(self):
        frames, us = self._data()
        seen = {}
        warp_frames(frames, us, lambda i, frame: seen.__setitem__(i, frame.shape), nworkers=2)
        assert sorted(seen) == list(range(5))
        assert all(s == (16, 16) for s in seen.values())
        print("✓ Callable sinks receive every frame index")

    def test_length_mismatch(self):
        frames, us = self._data()
        with pytest.raises(ShapeError):
            warp_frames(frames, us[:-1], np.empty_like(frames))
        print("✓ One displacement grid per frame is required")

    def test_single_frame(self):
        frames, us = self._data()
        expected = warp(frames[0], GridDeformation(us[0], (16, 16)))
        out = np.empty_like(frames[0])
        warp_frames(frames[0], us[0], out)
        np.testing.assert_allclose(out, expected, equal_nan=True)
        seen = {}
        warp_frames(frames[0], (us[0][0], us[0][1]), lambda i, frame: seen.__setitem__(i, frame))
        assert list(seen) == [0]
        np.testing.assert_allclose(seen[0], expected, equal_nan=True)
        print("✓ A single frame with a single u is warped as a one-frame stack")

    def test_cancellation(self):
        frames, us = self._data()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            warp_frames(frames, us, np.empty_like(frames), token=token)
        with pytest.raises(OperationCancelled):
            warp_frames(frames, us, np.empty_like(frames), nworkers=2, token=token)
        print("✓ A cancelled token stops frame warping")


class TestHelpers:
    """translate and warpgrid."""

    def test_translate(self):
        img = np.arange(12, dtype=np.float64).reshape(3, 4)
        out = translate(img, (0, 1))
        np.testing.assert_array_equal(out[:, :-1], img[:, 1:])
        assert np.all(np.isnan(out[:, -1]))
        assert np.all(np.isnan(translate(img, (5, 0))))
        print("✓ translate shifts with NaN fill")

    def test_warpgrid(self):
        phi = _shift((21, 31), (3, 4), (0, 0))
        img = warpgrid(phi)
        assert img.shape == (21, 31)
        assert img[10, 5] == 1
        rgb = warpgrid(phi, showidentity=True)
        assert rgb.shape == (21, 31, 3)
        print("✓ warpgrid draws grid lines through the knots")

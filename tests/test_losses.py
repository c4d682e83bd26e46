"""
Tests for Loss Functions
========================
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from cnnscratch.losses import CrossEntropyLoss
from cnnscratch.tensors import Tensor3D
from cnnscratch.exceptions import InvalidDistributionError, ShapeError


def row(*values):
    return Tensor3D.from_array(np.array(values, dtype=float).reshape(1, 1, -1))


class TestCrossEntropyLoss:
    """Tests for CrossEntropyLoss."""

    def test_perfect_prediction(self):
        loss = CrossEntropyLoss()

        assert loss.calculate(row(0, 1, 0), row(0, 1, 0)) < 1e-4

    def test_confident_wrong_prediction(self):
        """-log(0.1) > 2"""
        loss = CrossEntropyLoss()
        value = loss.calculate(row(0.9, 0.1, 0.0), row(0.0, 1.0, 0.0))

        assert value > 2.0
        assert abs(value - (-np.log(0.1))) < 1e-6

    def test_call_is_calculate(self):
        loss = CrossEntropyLoss()
        p, y = row(0.2, 0.8), row(1.0, 0.0)

        assert loss(p, y) == loss.calculate(p, y)

    def test_sums_over_rows(self):
        """Every (channel, row) is its own distribution; losses add up."""
        loss = CrossEntropyLoss()
        p = Tensor3D.from_array([[[0.5, 0.5], [0.25, 0.75]]])
        y = Tensor3D.from_array([[[1.0, 0.0], [0.0, 1.0]]])

        expected = -np.log(0.5) - np.log(0.75)
        assert abs(loss.calculate(p, y) - expected) < 1e-9

    def test_fused_gradient(self):
        loss = CrossEntropyLoss(with_softmax=True)
        grad = loss.gradient(row(0.2, 0.3, 0.5), row(0, 0, 1))

        np.testing.assert_allclose(grad.data.reshape(-1), [0.2, 0.3, -0.5])

    def test_plain_gradient(self):
        loss = CrossEntropyLoss(with_softmax=False)
        grad = loss.gradient(row(0.2, 0.3, 0.5), row(0, 0, 1))

        np.testing.assert_allclose(grad.data.reshape(-1), [0.0, 0.0, -2.0])

    def test_plain_gradient_saturates(self):
        """-1/eps when the true class has p < eps, +1/eps when a wrong class has p > 1 - eps."""
        eps = 1e-5
        loss = CrossEntropyLoss(with_softmax=False, epsilon=eps)
        grad = loss.gradient(row(1.0, 0.0), row(0.0, 1.0))

        np.testing.assert_allclose(grad.data.reshape(-1), [1.0 / eps, -1.0 / eps])

    def test_shape_mismatch(self):
        loss = CrossEntropyLoss()

        with pytest.raises(ShapeError):
            loss.calculate(row(0.5, 0.5), row(0, 0, 1))

    @pytest.mark.parametrize("predicted,actual", [
        ((0.5, 0.6), (1.0, 0.0)),   # prediction sums to 1.1
        ((1.5, -0.5), (1.0, 0.0)),  # prediction outside [0, 1]
        ((0.5, 0.5), (1.0, 1.0)),   # target sums to 2
        ((0.5, 0.5), (0.0, 0.0)),   # target sums to 0
    ])
    def test_invalid_distributions(self, predicted, actual):
        loss = CrossEntropyLoss()

        with pytest.raises(InvalidDistributionError):
            loss.calculate(row(*predicted), row(*actual))
        with pytest.raises(InvalidDistributionError):
            loss.gradient(row(*predicted), row(*actual))

    def test_none_inputs(self):
        with pytest.raises(TypeError):
            CrossEntropyLoss().calculate(None, row(1.0))


if __name__ == '__main__':
    pytest.main([__file__, '-v'])

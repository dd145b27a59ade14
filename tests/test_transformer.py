"""
Tests for the feed-forward network and the encoder block.
"""

import numpy as np
import pytest

from streamgpt.transformer import EncoderBlock, FeedForwardNetwork


class TestFeedForwardNetwork:
    def test_output_shape_and_default_width(self, rng):
        ffn = FeedForwardNetwork(8, rng=rng)

        output = ffn.forward(rng.standard_normal((2, 3, 8)))

        assert ffn.hidden_dimension == 32
        assert output.shape == (2, 3, 8)

    def test_positionwise(self, rng):
        """Each time step is transformed independently of the others."""
        ffn = FeedForwardNetwork(4, hidden_dimension=6, rng=rng)
        x = rng.standard_normal((1, 3, 4))

        full = ffn.forward(x)

        assert np.allclose(ffn.forward(x[:, 1:2]), full[:, 1:2])

    def test_gradients_match_numerical(self, rng, numerical_gradient):
        ffn = FeedForwardNetwork(4, hidden_dimension=6, rng=rng)
        x = rng.standard_normal((2, 3, 4))
        upstream = rng.standard_normal((2, 3, 4))

        def loss():
            return np.sum(ffn.forward(x) * upstream)

        ffn.forward(x)
        d_x = ffn.backward(upstream)
        gradients = ffn.get_gradients()

        assert np.allclose(d_x, numerical_gradient(loss, x), atol=1e-4)
        for name, parameter in ffn.get_parameters().items():
            assert np.allclose(
                gradients[name], numerical_gradient(loss, parameter), atol=1e-4
            ), f"Gradient mismatch for {name}"


class TestEncoderBlock:
    """Test the pre-norm encoder block."""

    def test_output_shape(self, rng):
        block = EncoderBlock(16, 4, rng=rng)

        output = block.forward(rng.standard_normal((2, 5, 16)))

        assert output.shape == (2, 5, 16), f"Expected (2, 5, 16), got {output.shape}"

    def test_causal_by_default(self, rng):
        block = EncoderBlock(8, 2, rng=rng)
        x = rng.standard_normal((1, 4, 8))

        baseline = block.forward(x)
        changed = x.copy()
        changed[:, 2:] = rng.standard_normal((1, 2, 8))

        assert np.allclose(block.forward(changed)[:, :2], baseline[:, :2])

    def test_streaming_matches_full_call(self, rng):
        block = EncoderBlock(8, 2, rng=rng)
        x = rng.standard_normal((1, 6, 8))

        full = block.forward(x)

        state = block.self_attention.new_state()
        streamed = np.concatenate(
            [block.forward(x[:, :4], state=state), block.forward(x[:, 4:], state=state)],
            axis=1,
        )

        assert np.allclose(streamed, full)

    def test_dropout_inactive_at_inference(self, rng):
        block = EncoderBlock(8, 2, dropout_rate=0.5, rng=rng)
        x = rng.standard_normal((1, 3, 8))

        assert np.array_equal(block.forward(x), block.forward(x))

    def test_training_dropout_requires_rng(self, rng):
        block = EncoderBlock(8, 2, dropout_rate=0.5, rng=rng)

        with pytest.raises(ValueError):
            block.forward(rng.standard_normal((1, 3, 8)), training=True)

    @pytest.mark.parametrize("dropout_rate", [0.0, 0.3])
    def test_gradients_match_numerical(self, rng, numerical_gradient, dropout_rate):
        block = EncoderBlock(6, 2, ffn_hidden_dimension=8, dropout_rate=dropout_rate, rng=rng)
        x = rng.standard_normal((2, 3, 6))
        upstream = rng.standard_normal((2, 3, 6))

        # A freshly seeded generator per call draws the same dropout masks
        def run():
            return block.forward(x, training=True, rng=np.random.default_rng(99))

        def loss():
            return np.sum(run() * upstream)

        run()
        d_x = block.backward(upstream)
        gradients = block.get_gradients()

        assert np.allclose(d_x, numerical_gradient(loss, x), atol=1e-4)
        for name in ("attn_qkv_weight", "attn_ln_gamma", "ffn_ln_beta", "ffn_linear2_weight"):
            parameter = block.get_parameters()[name]
            assert np.allclose(
                gradients[name], numerical_gradient(loss, parameter), atol=1e-4
            ), f"Gradient mismatch for {name}"

    def test_parameter_names(self, rng):
        block = EncoderBlock(8, 2, rng=rng)

        assert set(block.get_parameters()) == {
            "attn_ln_gamma",
            "attn_ln_beta",
            "attn_qkv_weight",
            "attn_qkv_bias",
            "attn_output_weight",
            "attn_output_bias",
            "ffn_ln_gamma",
            "ffn_ln_beta",
            "ffn_linear1_weight",
            "ffn_linear1_bias",
            "ffn_linear2_weight",
            "ffn_linear2_bias",
        }

"""
Tests for the complete language model.

Tests cover:
- HyperParameters validation
- Forward shapes and input validation
- Streaming decode through the per-layer cache
- Gradients through the whole stack, including the tied embedding
- Generation and the cross-entropy loss
"""

import dataclasses

import numpy as np
import pytest

from streamgpt.errors import ShapeError
from streamgpt.model import (
    HyperParameters,
    TransformerStack,
    cross_entropy_loss,
    cross_entropy_loss_backward,
)

SMALL = HyperParameters(
    vocabulary_size=11,
    context_size=8,
    embedding_size=8,
    head_count=2,
    layer_count=2,
    dropout_rate=0.0,
)


class CharacterTokenizer:
    def encode(self, text):
        return [ord(character) % SMALL.vocabulary_size for character in text]


@pytest.fixture
def model():
    return TransformerStack(SMALL, rng=np.random.default_rng(0))


class TestHyperParameters:
    def test_defaults(self):
        params = HyperParameters()

        assert params.head_size == 64
        assert params.vocabulary_size == 50257

    def test_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            SMALL.layer_count = 4

    def test_indivisible_heads_raise(self):
        with pytest.raises(ShapeError):
            HyperParameters(embedding_size=10, head_count=4)

    @pytest.mark.parametrize(
        "field", ["vocabulary_size", "context_size", "head_count", "layer_count"]
    )
    def test_non_positive_sizes_raise(self, field):
        with pytest.raises(ValueError):
            dataclasses.replace(SMALL, **{field: 0})


class TestForward:
    def test_logits_shape(self, model):
        logits = model.forward(np.array([[1, 2, 3], [4, 5, 6]]))

        assert logits.shape == (2, 3, 11)

    def test_causal(self, model):
        tokens = np.array([[1, 2, 3, 4]])

        baseline = model.forward(tokens)
        changed = model.forward(np.array([[1, 2, 9, 9]]))

        assert np.allclose(changed[:, :2], baseline[:, :2])

    def test_stateless_call_leaves_cache_alone(self, model):
        model.forward(np.array([[1, 2, 3]]))

        assert model.cache_length == 0

    def test_rank_one_input_raises(self, model):
        with pytest.raises(ShapeError):
            model.forward(np.array([1, 2, 3]))

    def test_out_of_vocabulary_ids_raise(self, model):
        with pytest.raises(ValueError):
            model.forward(np.array([[1, 11]]))
        with pytest.raises(ValueError):
            model.forward(np.array([[-1, 2]]))

    def test_sequence_longer_than_context_raises(self, model):
        with pytest.raises(ShapeError):
            model.forward(np.zeros((1, 9), dtype=int))

    def test_count_parameters(self, model):
        # Per block: two LayerNorms, fused QKV, output projection, two FFN layers
        per_block = 4 * 8 + (24 * 8 + 24) + (8 * 8 + 8) + (32 * 8 + 32) + (8 * 32 + 8)
        expected = 11 * 8 + 8 * 8 + 2 * per_block + 2 * 8

        assert model.count_parameters() == expected


class TestStreaming:
    def test_two_halves_match_single_call(self, model):
        tokens = np.array([[3, 1, 4, 1, 5, 9]])

        full = model.forward(tokens)

        first = model.forward(tokens[:, :3], use_cache=True)
        second = model.forward(tokens[:, 3:], use_cache=True)

        assert model.cache_length == 6
        assert np.allclose(np.concatenate([first, second], axis=1), full)

    def test_token_by_token_matches_single_call(self, model):
        tokens = np.array([[2, 7, 1, 8, 2], [8, 1, 8, 2, 8]])

        full = model.forward(tokens)

        model.reset_state(batch_size=2)
        steps = [model.forward(tokens[:, t : t + 1], use_cache=True) for t in range(5)]

        assert np.allclose(np.concatenate(steps, axis=1), full)

    def test_reset_starts_a_new_sequence(self, model):
        tokens = np.array([[5, 6, 7]])
        fresh = model.forward(tokens, use_cache=True)
        model.forward(np.array([[1, 1]]), use_cache=True)

        model.reset_state()

        assert model.cache_length == 0
        assert np.allclose(model.forward(tokens, use_cache=True), fresh)

    def test_cache_overflow_raises(self, model):
        model.forward(np.zeros((1, 6), dtype=int), use_cache=True)

        with pytest.raises(ShapeError):
            model.forward(np.zeros((1, 3), dtype=int), use_cache=True)

    def test_call_with_tokenizer(self):
        model = TransformerStack(
            SMALL, tokenizer=CharacterTokenizer(), rng=np.random.default_rng(1)
        )
        full = model.forward(np.array([CharacterTokenizer().encode("hello")]))

        first = model("hel")
        second = model("lo")

        assert first.shape == (1, 3, 11)
        assert np.allclose(np.concatenate([first, second], axis=1), full)

    def test_call_without_tokenizer_raises(self, model):
        with pytest.raises(ValueError):
            model("text")


    def test_empty_chunk_returns_no_logits(self, model):
        model.forward(np.array([[1, 2]]), use_cache=True)

        logits = model.forward(np.zeros((1, 0), dtype=int), use_cache=True)

        assert logits.shape == (1, 0, 11)
        assert model.cache_length == 2

    def test_empty_text(self):
        model = TransformerStack(
            SMALL, tokenizer=CharacterTokenizer(), rng=np.random.default_rng(1)
        )
        model("ab")

        assert model("").shape == (1, 0, 11)
        assert model.cache_length == 2

    def test_failing_layer_leaves_every_cache_unchanged(self, model, monkeypatch):
        model.forward(np.array([[1, 2, 3]]), use_cache=True)

        def broken_forward(*args, **kwargs):
            raise ShapeError("broken layer")

        monkeypatch.setattr(model.blocks[1], "forward", broken_forward)
        with pytest.raises(ShapeError):
            model.forward(np.array([[4, 5]]), use_cache=True)

        assert [state.time_steps for state in model.state] == [3, 3]


class TestBackward:
    def test_gradients_match_numerical(self, numerical_gradient):
        model = TransformerStack(
            dataclasses.replace(SMALL, layer_count=1), rng=np.random.default_rng(2)
        )
        tokens = np.array([[1, 3, 3, 7], [0, 2, 4, 6]])
        targets = np.array([[3, 3, 7, 0], [2, 4, 6, 8]])

        def loss():
            return cross_entropy_loss(model.forward(tokens), targets)

        logits = model.forward(tokens)
        gradients = model.backward(cross_entropy_loss_backward(logits, targets))
        parameters = model.get_parameters()

        assert set(gradients) == set(parameters)
        for name in (
            "token_embedding.weight",
            "positional_embedding.weight",
            "blocks.0.attn_qkv_weight",
            "blocks.0.ffn_ln_gamma",
            "final_layer_norm.beta",
        ):
            assert np.allclose(
                gradients[name], numerical_gradient(loss, parameters[name]), atol=1e-4
            ), f"Gradient mismatch for {name}"

    def test_unused_positions_get_no_gradient(self, model):
        tokens = np.array([[1, 2, 3]])
        logits = model.forward(tokens)

        gradients = model.backward(cross_entropy_loss_backward(logits, tokens))

        assert np.all(gradients["positional_embedding.weight"][3:] == 0.0)
        assert np.any(gradients["positional_embedding.weight"][:3] != 0.0)


class TestGenerate:
    def test_output_shape(self, model):
        generated = model.generate(
            np.array([[1, 2]]), max_new_tokens=4, rng=np.random.default_rng(0)
        )

        assert generated.shape == (1, 6)
        assert np.array_equal(generated[:, :2], [[1, 2]])
        assert np.all((generated >= 0) & (generated < 11))

    def test_greedy_picks_argmax(self, model):
        prompt = np.array([[4, 2, 7]])

        generated = model.generate(prompt, max_new_tokens=1, temperature=0)

        assert generated[0, -1] == np.argmax(model.forward(prompt)[0, -1])

    def test_greedy_is_deterministic(self, model):
        prompt = np.array([[4, 2, 7]])

        first = model.generate(prompt, max_new_tokens=5, temperature=0)
        second = model.generate(prompt, max_new_tokens=5, temperature=0)

        assert np.array_equal(first, second)

    def test_runs_past_context(self, model):
        generated = model.generate(
            np.array([[1, 2, 3, 4, 5, 6]]), max_new_tokens=10, temperature=0
        )

        assert generated.shape == (1, 16)
        assert model.cache_length <= SMALL.context_size

    def test_top_one_is_greedy(self, model):
        prompt = np.array([[9, 9, 1]])

        sampled = model.generate(
            prompt, max_new_tokens=3, top_k=1, rng=np.random.default_rng(5)
        )
        greedy = model.generate(prompt, max_new_tokens=3, temperature=0)

        assert np.array_equal(sampled, greedy)


class TestCrossEntropy:
    def test_uniform_logits(self):
        logits = np.zeros((2, 3, 5))
        targets = np.array([[0, 1, 2], [3, 4, 0]])

        assert np.isclose(cross_entropy_loss(logits, targets), np.log(5))

    def test_ignore_index(self):
        logits = np.zeros((1, 2, 4))
        logits[0, 0, 1] = 10.0
        targets = np.array([[1, -100]])

        loss = cross_entropy_loss(logits, targets, ignore_index=-100)
        gradient = cross_entropy_loss_backward(logits, targets, ignore_index=-100)

        assert loss < 1e-3
        assert np.all(gradient[0, 1] == 0.0)

    def test_everything_ignored(self):
        targets = np.full((1, 3), -1)

        assert cross_entropy_loss(np.zeros((1, 3, 4)), targets, ignore_index=-1) == 0.0
        assert np.all(
            cross_entropy_loss_backward(np.zeros((1, 3, 4)), targets, ignore_index=-1) == 0
        )

    def test_backward_matches_numerical(self, rng, numerical_gradient):
        logits = rng.standard_normal((2, 3, 5))
        targets = np.array([[0, 4, 2], [1, 1, 3]])

        def loss():
            return cross_entropy_loss(logits, targets, ignore_index=3)

        assert np.allclose(
            cross_entropy_loss_backward(logits, targets, ignore_index=3),
            numerical_gradient(loss, logits),
            atol=1e-4,
        )

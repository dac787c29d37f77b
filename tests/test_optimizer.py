"""
Tests for optimizer module.

Tests cover:
- Global gradient norm, norm clipping and the finite check
- Adam: first-step size, bias correction, convergence on a quadratic,
  identical trajectories over 100 steps
- Non-finite gradients are rejected without touching any state
- One step counter shared by all parameters
- State save/restore
"""

import numpy as np
import pytest


class TestGradientClipping:
    """
    Global norm clipping:
        norm = sqrt(sum of squares over every gradient)
        g <- g * max_norm / norm   when norm > max_norm
    """

    def test_global_norm(self):
        from scratchgpt.optimizer import global_gradient_norm

        gradients = {"a": np.array([3.0]), "b": np.array([[4.0, 0.0]])}

        assert np.isclose(global_gradient_norm(gradients), 5.0)

    def test_clip_scales_every_gradient_by_same_factor(self):
        from scratchgpt.optimizer import clip_gradient_norm, global_gradient_norm

        gradients = {"a": np.array([30.0]), "b": np.array([40.0, 0.0])}

        clipped, norm = clip_gradient_norm(gradients, 5.0)

        assert np.isclose(norm, 50.0), "Returned norm is the pre-clip norm"
        assert np.allclose(clipped["a"], [3.0])
        assert np.allclose(clipped["b"], [4.0, 0.0])
        assert np.isclose(global_gradient_norm(clipped), 5.0)

    def test_small_gradients_unchanged(self):
        from scratchgpt.optimizer import clip_gradient_norm

        gradients = {"a": np.array([0.3, 0.4])}

        clipped, norm = clip_gradient_norm(gradients, 5.0)

        assert np.isclose(norm, 0.5)
        assert np.array_equal(clipped["a"], gradients["a"])

    def test_inputs_are_not_modified(self):
        from scratchgpt.optimizer import clip_gradient_norm

        gradients = {"a": np.array([100.0])}
        clip_gradient_norm(gradients, 1.0)

        assert gradients["a"][0] == 100.0

    def test_non_positive_max_norm_raises(self):
        from scratchgpt.optimizer import clip_gradient_norm

        with pytest.raises(ValueError):
            clip_gradient_norm({"a": np.ones(2)}, 0.0)

    def test_check_finite_names_original_entries(self):
        from scratchgpt.errors import NumericInstability
        from scratchgpt.optimizer import check_finite

        check_finite({"a": np.ones(2)})

        with pytest.raises(NumericInstability) as excinfo:
            check_finite({"a": np.ones(2), "b": np.array([1.0, np.inf]), "c": np.array([np.nan])})

        assert excinfo.value.names == ["b", "c"]


class TestAdam:
    """
    Adam (Kingma & Ba, 2014) with bias-corrected moments and a shared step counter.
    """

    def test_step_before_initialize_raises(self):
        from scratchgpt.optimizer import Adam

        with pytest.raises(RuntimeError):
            Adam().step({"w": np.ones(2)})

    def test_first_step_moves_by_learning_rate(self):
        """After bias correction the first update is lr * sign(g)."""
        from scratchgpt.optimizer import Adam

        params = {"w": np.array([1.0, -2.0, 0.5])}
        optimizer = Adam(learning_rate=0.1)
        optimizer.initialize(params)

        optimizer.step({"w": np.array([0.5, -3.0, 1e-2])})

        assert np.allclose(params["w"], [0.9, -1.9, 0.4], atol=1e-6)
        assert optimizer.step_count == 1

    def test_updates_in_place(self):
        from scratchgpt.optimizer import Adam

        weights = np.ones(3)
        optimizer = Adam(learning_rate=0.1)
        optimizer.initialize({"w": weights})

        optimizer.step({"w": np.ones(3)})

        assert np.all(weights < 1.0), "The bound array itself must change"

    def test_minimizes_quadratic(self):
        from scratchgpt.optimizer import Adam

        params = {"x": np.array([5.0, -3.0])}
        optimizer = Adam(learning_rate=0.1)
        optimizer.initialize(params)

        for _ in range(500):
            optimizer.step({"x": 2.0 * params["x"]})

        assert np.allclose(params["x"], 0.0, atol=5e-2)

    def test_learning_rate_override(self):
        from scratchgpt.optimizer import Adam

        params = {"w": np.zeros(1)}
        optimizer = Adam(learning_rate=1.0)
        optimizer.initialize(params)

        optimizer.step({"w": np.ones(1)}, learning_rate=0.01)

        assert np.isclose(params["w"][0], -0.01, atol=1e-6)

    def test_weight_decay_pulls_toward_zero(self):
        from scratchgpt.optimizer import Adam

        with_decay = {"w": np.array([4.0])}
        without_decay = {"w": np.array([4.0])}
        decayed = Adam(learning_rate=0.1, weight_decay=0.5)
        plain = Adam(learning_rate=0.1)
        decayed.initialize(with_decay)
        plain.initialize(without_decay)

        decayed.step({"w": np.array([-1.0])})
        plain.step({"w": np.array([-1.0])})

        assert np.isclose(without_decay["w"][0] - with_decay["w"][0], 0.1 * 0.5 * 4.0)

    def test_shared_step_counter(self):
        """Every parameter sees the same t, even when updated together."""
        from scratchgpt.optimizer import Adam

        params = {"a": np.zeros(2), "b": np.zeros((2, 2))}
        optimizer = Adam()
        optimizer.initialize(params)

        for _ in range(3):
            optimizer.step({"a": np.ones(2), "b": np.ones((2, 2))})

        assert optimizer.step_count == 3
        assert np.allclose(params["a"], params["b"][0])

    def test_non_finite_gradient_leaves_everything_untouched(self):
        from scratchgpt.errors import NumericInstability
        from scratchgpt.optimizer import Adam

        params = {"a": np.ones(2), "b": np.ones(2)}
        optimizer = Adam(learning_rate=0.1)
        optimizer.initialize(params)
        optimizer.step({"a": np.ones(2), "b": np.ones(2)})
        snapshot = {name: value.copy() for name, value in params.items()}
        state = optimizer.get_state()

        with pytest.raises(NumericInstability) as excinfo:
            optimizer.step({"a": np.array([1.0, np.nan]), "b": np.array([np.inf, 0.0])})

        assert excinfo.value.names == ["a", "b"]
        assert optimizer.step_count == 1
        for name in params:
            assert np.array_equal(params[name], snapshot[name])
            assert np.array_equal(optimizer.first_moment[name], state["first_moment"][name])
            assert np.array_equal(optimizer.second_moment[name], state["second_moment"][name])

    def test_unknown_gradient_name_raises(self):
        from scratchgpt.optimizer import Adam

        optimizer = Adam()
        optimizer.initialize({"w": np.zeros(1)})

        with pytest.raises(KeyError):
            optimizer.step({"other": np.zeros(1)})

    def test_built_in_clipping_returns_pre_clip_norm(self):
        from scratchgpt.optimizer import Adam

        optimizer = Adam(gradient_clip=1.0)
        optimizer.initialize({"w": np.zeros(2)})

        norm = optimizer.step({"w": np.array([30.0, 40.0])})

        assert np.isclose(norm, 50.0)
        assert np.allclose(optimizer.first_moment["w"], 0.1 * np.array([0.6, 0.8]))

    def test_deterministic_over_100_steps(self):
        from scratchgpt.optimizer import Adam

        trajectories = []
        for _ in range(2):
            rng = np.random.default_rng(7)
            params = {"w": rng.normal(size=(3, 4)), "b": np.zeros(4)}
            optimizer = Adam(learning_rate=0.01, weight_decay=0.01, gradient_clip=1.0)
            optimizer.initialize(params)
            trajectory = []
            for _ in range(100):
                gradients = {
                    "w": params["w"] + rng.normal(size=(3, 4)),
                    "b": rng.normal(size=4),
                }
                optimizer.step(gradients)
                trajectory.append((params["w"].copy(), params["b"].copy()))
            trajectories.append(trajectory)

        assert len(trajectories[0]) == 100
        for (w1, b1), (w2, b2) in zip(*trajectories):
            assert np.array_equal(w1, w2)
            assert np.array_equal(b1, b2)


class TestAdamState:
    def test_round_trip_continues_identically(self):
        from scratchgpt.optimizer import Adam

        def gradients(params):
            return {"w": np.sin(params["w"]) + 0.1}

        params = {"w": np.linspace(-1.0, 1.0, 4)}
        optimizer = Adam(learning_rate=0.05)
        optimizer.initialize(params)
        for _ in range(3):
            optimizer.step(gradients(params))
        state = optimizer.get_state()
        saved_params = {"w": params["w"].copy()}

        for _ in range(2):
            optimizer.step(gradients(params))
        expected = params["w"].copy()

        resumed = Adam(learning_rate=0.05)
        resumed.initialize(saved_params)
        resumed.load_state(state)
        for _ in range(2):
            resumed.step(gradients(saved_params))

        assert resumed.step_count == 5
        assert np.allclose(saved_params["w"], expected)

    def test_get_state_returns_copies(self):
        from scratchgpt.optimizer import Adam

        optimizer = Adam()
        optimizer.initialize({"w": np.zeros(1)})
        state = optimizer.get_state()

        optimizer.step({"w": np.ones(1)})

        assert state["first_moment"]["w"][0] == 0.0
        assert state["step_count"] == 0

    def test_load_state_missing_parameter_raises(self):
        from scratchgpt.optimizer import Adam

        optimizer = Adam()
        optimizer.initialize({"w": np.zeros(1), "b": np.zeros(1)})

        with pytest.raises(KeyError):
            optimizer.load_state(
                {"first_moment": {"w": np.zeros(1)}, "second_moment": {"w": np.zeros(1)},
                 "step_count": 1}
            )

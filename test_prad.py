import numpy as np
import pytest

from rmad.errors import PreconditionError, ShapeMismatchError
from rmad.prad import BranchStack, PradOp, PradResult


@pytest.fixture
def data():
    return np.random.default_rng(7).normal(size=(3, 4))


def test_branch_gradients_are_summed(data):
    x = PradOp(data)
    x_branch = x.branch()
    y = x.sin().pradop.mul(x_branch.cos().pradop)

    y.back(np.ones_like(data))

    expected = np.cos(data) ** 2 - np.sin(data) ** 2
    np.testing.assert_allclose(x.seed_gradient, expected)
    np.testing.assert_allclose(y.result, np.sin(data) * np.cos(data))


def test_branched_and_unbranched_versions_agree(data):
    # sin(x) * cos(x) == 0.5 * sin(2x)
    x = PradOp(data)
    x_branch = x.branch()
    x.sin().pradop.mul(x_branch.cos().pradop).back(np.ones_like(data))

    z = PradOp(data)
    z.scale(2.0).then(PradOp.sin).pradop.scale(0.5).back(np.ones_like(data))

    np.testing.assert_allclose(x.seed_gradient, z.seed_gradient)


def test_intermediate_value_fires_once_after_its_branches(data):
    x = PradOp(data)
    e = x.exp().pradop
    e_branch = e.branch()
    e.mul(e_branch).back(np.ones_like(data))

    np.testing.assert_allclose(x.seed_gradient, 2.0 * np.exp(2.0 * data))
    np.testing.assert_allclose(e.gradient, 2.0 * np.exp(data))


def test_fan_out_for_four_consumers():
    data = np.array([[0.5, -1.5, 2.0]])
    x = PradOp(data)
    first, second, third, last = x.fan_out(4)

    assert last is x
    assert all(h.origin is x for h in (first, second, third))

    y = first.mul(second).pradop.mul(third).pradop.mul(last)
    assert x.usage_count == 4

    y.back(np.ones_like(data))
    np.testing.assert_allclose(x.seed_gradient, 4.0 * data ** 3)


@pytest.mark.parametrize("n", [1, 2, 3])
def test_fan_out_returns_the_original_last(n):
    x = PradOp([[1.0]])
    handles = x.fan_out(n)
    assert len(handles) == n
    assert handles[-1] is x
    assert len(x.branches) == n - 1


def test_branch_of_a_branch_attaches_to_the_root():
    x = PradOp([[1.0, 2.0]])
    nested = x.branch().branch()
    assert nested.origin is x
    assert len(x.branches) == 2


def test_branch_stack_pops_in_creation_order():
    x = PradOp([[1.0]])
    stack = x.branch_stack(3)
    assert isinstance(stack, BranchStack)
    assert len(stack) == 3

    popped = [stack.pop() for _ in range(3)]
    assert popped == x.branches
    with pytest.raises(PreconditionError, match="empty"):
        stack.pop()


def test_a_handle_feeds_one_consumer():
    x = PradOp([[1.0, 2.0]])
    x.sin()
    with pytest.raises(PreconditionError, match="branch"):
        x.cos()


def test_operand_handles_are_consumed_too():
    a = PradOp([[1.0]])
    b = PradOp([[2.0]])
    a.add(b)
    with pytest.raises(PreconditionError):
        b.exp()


def test_uncomputed_value_cannot_be_used():
    empty = PradOp()
    with pytest.raises(PreconditionError):
        empty.branch()
    with pytest.raises(PreconditionError):
        empty.sin()
    with pytest.raises(PreconditionError):
        empty.back()


def test_invalid_fan_out_counts():
    x = PradOp([[1.0]])
    with pytest.raises(PreconditionError):
        x.fan_out(0)
    with pytest.raises(PreconditionError):
        x.branch_stack(0)


def test_single_element_back_defaults_to_one():
    x = PradOp([[3.0]])
    y = x.square().pradop
    y.back()
    np.testing.assert_allclose(x.seed_gradient, [[6.0]])


def test_non_scalar_back_needs_a_gradient(data):
    y = PradOp(data).exp().pradop
    with pytest.raises(PreconditionError, match="non-scalar"):
        y.back()


def test_then_chains_operations(data):
    x = PradOp(data)
    result = x.exp().then(PradOp.sin)
    assert isinstance(result, PradResult)
    np.testing.assert_allclose(result.result, np.sin(np.exp(data)))

    result.back(np.ones_like(data))
    np.testing.assert_allclose(x.seed_gradient, np.cos(np.exp(data)) * np.exp(data))


def test_matmul_between_two_values():
    rng = np.random.default_rng(3)
    a_data, b_data = rng.normal(size=(2, 3)), rng.normal(size=(3, 2))
    a, b = PradOp(a_data), PradOp(b_data)
    upstream = rng.normal(size=(2, 2))

    a.matmul(b).back(upstream)

    np.testing.assert_allclose(a.seed_gradient, upstream @ b_data.T)
    np.testing.assert_allclose(b.seed_gradient, a_data.T @ upstream)


def test_constants_do_not_receive_gradients():
    x = PradOp([[1.0, 4.0]])
    x.add(3.0).pradop.div(2.0).back(np.ones((1, 2)))
    np.testing.assert_allclose(x.seed_gradient, [[0.5, 0.5]])


def test_reductions_and_reshapes(data):
    x = PradOp(data)
    total = x.transpose().pradop.reshape((2, 6)).pradop.sum()
    assert total.result.shape == (1, 1)
    total.back()
    np.testing.assert_allclose(x.seed_gradient, np.ones_like(data))


def test_leaf_gradients_accumulate_until_zero_grad():
    data = np.array([[1.0, 2.0]])
    x = PradOp(data)
    x_branch = x.branch()
    x.square().back(np.ones((1, 2)))
    x_branch.square().back(np.ones((1, 2)))
    np.testing.assert_allclose(x.seed_gradient, 4.0 * data)

    x.zero_grad()
    assert x.seed_gradient is None
    assert x.gradient is None


def test_shape_mismatch_surfaces_from_the_operation():
    x = PradOp(np.ones((2, 2)))
    with pytest.raises(ShapeMismatchError):
        x.add(np.ones((3, 3)))


def test_upstream_gradient_must_match_the_result_shape():
    y = PradOp(np.arange(4.0).reshape(2, 2)).sin()
    with pytest.raises(ShapeMismatchError):
        y.back(np.ones((1, 2)))


def test_failed_back_can_be_retried():
    data = np.arange(4.0).reshape(2, 2)
    x = PradOp(data)
    y = x.sin().pradop
    with pytest.raises(ShapeMismatchError):
        y.back(np.ones((3, 3)))
    assert x.seed_gradient is None

    y.back(np.ones((2, 2)))
    np.testing.assert_allclose(x.seed_gradient, np.cos(data))


def test_relu_passes_gradient_where_positive():
    x = PradOp([[-1.0, 2.0, 0.5]])
    y = x.relu()
    np.testing.assert_allclose(y.result, [[0.0, 2.0, 0.5]])
    y.back(np.ones((1, 3)))
    np.testing.assert_allclose(x.seed_gradient, [[0.0, 1.0, 1.0]])


def test_smooth_activations_at_zero():
    for name, slope in [("gelu", 0.5), ("swish", 0.5)]:
        x = PradOp([[0.0]])
        y = getattr(x, name)()
        np.testing.assert_allclose(y.result, [[0.0]])
        y.back()
        np.testing.assert_allclose(x.seed_gradient, [[slope]])

    x = PradOp(np.zeros((2, 3)))
    y = x.amplified_sigmoid()
    assert y.result.shape == (2, 3)
    y.back(np.ones((2, 3)))
    assert np.all(x.seed_gradient > 0)


def test_layer_norm_rows_are_centred(data):
    x = PradOp(data)
    y = x.layer_norm()
    np.testing.assert_allclose(y.result.mean(axis=1), 0.0, atol=1e-12)
    # shifting a row does not change its normalized value
    y.back(np.ones_like(data))
    np.testing.assert_allclose(x.seed_gradient, 0.0, atol=1e-8)


def test_concatenation_splits_the_gradient():
    rng = np.random.default_rng(5)
    a, b = PradOp(rng.normal(size=(2, 1))), PradOp(rng.normal(size=(2, 2)))
    upstream = rng.normal(size=(2, 3))
    a.hconcat(b).back(upstream)
    np.testing.assert_allclose(a.seed_gradient, upstream[:, :1])
    np.testing.assert_allclose(b.seed_gradient, upstream[:, 1:])

    c, d = PradOp(np.ones((1, 2))), PradOp(np.zeros((2, 2)))
    stacked = c.vconcat(d)
    assert stacked.result.shape == (3, 2)
    stacked.back(np.arange(6.0).reshape(3, 2))
    np.testing.assert_allclose(c.seed_gradient, [[0.0, 1.0]])
    np.testing.assert_allclose(d.seed_gradient, [[2.0, 3.0], [4.0, 5.0]])

import copy

import matplotlib
matplotlib.use('Agg')
import numpy as np
import pandas as pd
import pytest
import scipy.stats
from scipy.integrate import quad
from scipy.special import gammaln, polygamma, digamma

from bayesbart import (
    GaussianBART,
    NegBinBART,
    sim_friedman,
    sim_negbin,
    build_design_matrix,
    group_split_probs,
    QuantileNormalizer,
    quantile_normalize,
    counterfactual_design,
    additive_summary,
    additive_summary_plot,
    summary_rsq,
    level_contrasts,
    long_contrasts,
    fit_glm_nb,
)
from bayesbart.tree import Tree
from bayesbart.node import Node
from bayesbart.node_data import NodeDataGaussian, NodeDataLogLinear
from bayesbart.exceptions import InvalidTreeError, InvalidDataError
from bayesbart import eval as bbeval
from bayesbart import utils

# =============================================================================
# Fixtures for continuous and count data
# =============================================================================
@pytest.fixture
def regression_data():
    rng = np.random.default_rng(42)
    X, y = sim_friedman(100, rng, sigma=1.)
    return X, y, rng

@pytest.fixture
def count_data():
    rng = np.random.default_rng(42)
    df = sim_negbin(80, rng, k=2.)
    X, y, groups = build_design_matrix(df, ['color', 'spine', 'width', 'weight'], response='satell', factors=['color', 'spine'])
    return df, X, y, groups, rng

# =============================================================================
# Tests for simulators
# =============================================================================
def test_sim_friedman():
    """Test that sim_friedman returns a DataFrame and Series with the expected shape and columns."""
    rng = np.random.default_rng(42)
    X, y = sim_friedman(50, rng, p=7)
    assert isinstance(X, pd.DataFrame), "X should be a DataFrame"
    assert isinstance(y, pd.Series), "y should be a Series"
    assert list(X.columns) == [f'v{i}' for i in range(1, 8)]
    assert X.shape[0] == 50 and y.shape[0] == 50
    with pytest.raises(ValueError):
        sim_friedman(10, rng, p=3)

def test_sim_negbin():
    rng = np.random.default_rng(42)
    df = sim_negbin(200, rng)
    assert list(df.columns) == ['satell', 'color', 'spine', 'width', 'weight']
    assert set(df['color']) <= {'dark', 'darker', 'light', 'medium'}
    assert set(df['spine']) <= {1, 2, 3}
    assert np.all(df['satell'] >= 0)

# =============================================================================
# Tests for covariate preparation
# =============================================================================
def test_build_design_matrix(count_data):
    df, X, y, groups, _ = count_data
    assert list(X.columns) == ['color_dark', 'color_darker', 'color_light', 'color_medium',
                               'spine_1', 'spine_2', 'spine_3', 'width', 'weight']
    assert groups['color'] == ['color_dark', 'color_darker', 'color_light', 'color_medium']
    assert groups['width'] == ['width']
    # no reference level is dropped
    np.testing.assert_array_equal(X[groups['color']].sum(axis=1), np.ones(len(df)))
    np.testing.assert_array_equal(y, df['satell'])

def test_build_design_matrix_default_factors():
    df = pd.DataFrame({'a': ['x', 'y', 'x'], 'b': [1., 2., 3.]})
    X, y, groups = build_design_matrix(df, ['a', 'b'])
    assert y is None
    assert groups == {'a': ['a_x', 'a_y'], 'b': ['b']}
    with pytest.raises(KeyError):
        build_design_matrix(df, ['a', 'c'])

def test_group_split_probs(count_data):
    _, X, _, groups, _ = count_data
    probs = group_split_probs(X.columns, groups)
    assert probs.shape == (9, 4)
    np.testing.assert_allclose(probs.sum(axis=0), 1.)
    assert probs.loc['color_dark', 'color'] == pytest.approx(1/4)
    assert probs.loc['spine_2', 'spine'] == pytest.approx(1/3)
    assert probs.loc['width', 'color'] == 0.
    with pytest.raises(ValueError):
        group_split_probs(X.columns, {'color': groups['color']})

def test_quantile_normalizer():
    rng = np.random.default_rng(3)
    X = pd.DataFrame({'a': rng.exponential(size=50), 'const': np.ones(50),
                      'c': pd.Categorical(rng.choice(['u', 'v'], size=50))})
    qn = QuantileNormalizer().fit(X)
    Xt = qn.transform(X)
    assert Xt['a'].min() == pytest.approx(0.) and Xt['a'].max() == pytest.approx(1.)
    # ordering is preserved
    np.testing.assert_array_equal(np.argsort(Xt['a'], kind='stable'), np.argsort(X['a'], kind='stable'))
    np.testing.assert_array_equal(Xt['const'], X['const'])
    assert (Xt['c'] == X['c']).all()
    X_new = pd.DataFrame({'a': [-1., 1e6], 'const': [1., 1.], 'c': X['c'][:2]})
    np.testing.assert_allclose(qn.transform(X_new)['a'], [0., 1.])
    pd.testing.assert_frame_equal(quantile_normalize(X), Xt)

def test_quantile_normalizer_requires_fit():
    with pytest.raises(ValueError):
        QuantileNormalizer().transform(pd.DataFrame({'a': [1., 2.]}))

def test_counterfactual_design(count_data):
    _, X, _, groups, _ = count_data
    X_cf, labels = counterfactual_design(X, groups['color'])
    n = X.shape[0]
    assert labels == ['dark', 'darker', 'light', 'medium']
    assert X_cf.shape == (4*n, X.shape[1])
    block = X_cf.iloc[n:2*n]
    assert (block['color_darker'] == 1).all()
    assert (block[['color_dark', 'color_light', 'color_medium']] == 0).all().all()
    np.testing.assert_array_equal(block['width'], X['width'])

# =============================================================================
# Tests for NodeData functionality
# =============================================================================
def test_node_data_available_splits_and_split():
    X = pd.DataFrame({'v1': [3., 1., 2., 4., 5., 6.], 'v2': np.ones(6)})
    node_data = NodeDataGaussian(mu=0., X=X, idx=np.arange(6), rng=np.random.default_rng(42), debug=True, node_min_size=1)
    avail, is_cat = node_data.get_available_splits()
    # the smallest value would leave the left child empty, constant columns cannot split
    np.testing.assert_array_equal(avail['v1'], [2., 3., 4., 5., 6.])
    assert 'v2' not in avail
    assert not is_cat['v1']
    assert node_data.calc_n_splits('v1') == 5
    left_idx, right_idx = node_data.get_data_split('v1', 4.)
    np.testing.assert_array_equal(left_idx, [0, 1, 2])
    np.testing.assert_array_equal(right_idx, [3, 4, 5])

def test_node_data_min_size():
    X = pd.DataFrame({'v1': np.arange(10.)})
    node_data = NodeDataGaussian(mu=0., X=X, idx=np.arange(10), rng=np.random.default_rng(42), debug=True, node_min_size=4)
    with pytest.raises(InvalidTreeError):
        node_data.get_split_data('v1', 2., 0., 0.)
    with pytest.raises(InvalidTreeError):
        node_data.calc_n_splits('not_a_column')

def test_node_data_categorical_split_subset():
    X = pd.DataFrame({'c': pd.Categorical(['a', 'b', 'c', 'd'] * 3)})
    node_data = NodeDataGaussian(mu=0., X=X, idx=np.arange(12), rng=np.random.default_rng(1), debug=True, node_min_size=1)
    avail, is_cat = node_data.get_available_splits()
    assert is_cat['c']
    # non-empty proper subsets of 4 levels
    assert node_data.calc_n_splits('c') == 14
    for _ in range(20):
        _, subset = node_data.sample_split('c', avail['c'])
        assert 0 < len(subset) < 4

def test_node_data_log_linear():
    X = pd.DataFrame({'v1': np.arange(5.)})
    node_data = NodeDataLogLinear(lam=2., X=X, idx=np.arange(5), rng=np.random.default_rng(42), debug=True, node_min_size=1)
    assert node_data.get_leaf_value() == pytest.approx(np.log(2.))
    with pytest.raises(ValueError):
        node_data.update_node_params(0.)

def test_node_data_copy_and_no_data_copy():
    X = pd.DataFrame({'v1': np.arange(8.)})
    node_data = NodeDataGaussian(mu=3., X=X, idx=np.arange(8), rng=np.random.default_rng(42), debug=True, node_min_size=1)
    node_copy = node_data.copy(light=False)
    node_data.update_node_params(10.)
    assert node_copy.mu == 3.
    stored = node_data.copy(light=True, no_data=True)
    assert not stored.has_data()
    assert stored.get_nobs() == 8
    assert stored.get_leaf_value() == 10.

# =============================================================================
# Tests for Node and Tree functionality
# =============================================================================
def create_simple_node(X):
    node_data = NodeDataGaussian(mu=0., X=X, idx=np.arange(X.shape[0]), rng=np.random.default_rng(42), debug=True, node_min_size=1)
    return Node(id=0, is_l=True, data=node_data, rng=np.random.default_rng(42), debug=True)

def test_node_update_and_retrieve_split_info():
    node = create_simple_node(pd.DataFrame({'v1': [1., 2., 3., 4.]}))
    split_var, split_val, is_cat = node.get_split_info()
    assert split_var == '' and split_val == '' and is_cat is False
    node.update_split_info('v1', 2.5)
    split_var, split_val, is_cat = node.get_split_info()
    assert split_var == 'v1'
    assert split_val == 2.5

def test_node_var_probs():
    X = pd.DataFrame({'v1': np.arange(10.), 'v2': np.arange(10.)[::-1], 'v3': np.zeros(10)})
    node = create_simple_node(X)
    probs = node.get_var_probs({'v1': 0.2, 'v2': 0.3, 'v3': 0.5})
    # v3 has no split, the rest is renormalized
    assert set(probs) == {'v1', 'v2'}
    assert probs['v1'] == pytest.approx(0.4)
    for _ in range(20):
        split_var, split_val = node.get_new_split({'v1': 1., 'v2': 0., 'v3': 0.})
        assert split_var == 'v1'
    with pytest.raises(InvalidTreeError):
        node.get_var_probs({'v3': 1.})

def create_simple_tree(node_min_size=2):
    X = pd.DataFrame({'v1': np.arange(1., 11.), 'c': pd.Categorical(['a', 'b'] * 5)})
    root_data = NodeDataGaussian(mu=0., X=X, idx=np.arange(10), rng=np.random.default_rng(42), debug=True, node_min_size=node_min_size)
    return Tree(root_node_data=root_data, rng=np.random.default_rng(42), node_min_size=node_min_size, debug=True)

def test_tree_root_properties():
    tree = create_simple_tree()
    root = tree.get_root()
    assert root.id == 0
    assert root.depth == 0
    assert tree.is_stump()

def test_tree_apply_split_and_validity():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=6., l_leaf_params=1., r_leaf_params=2.)
    assert not tree.is_stump()
    assert tree.is_valid()
    assert tree.get_n_leaves() == 2
    left, right = tree.get_children(root)
    assert left.is_l and left.get_nobs() == 5
    assert tree.get_sibling(left) == right
    assert tree.get_parents_with_two_leaves() == [root]
    assert tree.get_split_vars() == ['v1']
    with pytest.raises(InvalidTreeError):
        tree.apply_split(left, split_var='v1', split_val=2., l_leaf_params=0., r_leaf_params=0.)

def test_tree_fit_and_predict():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=6., l_leaf_params=1., r_leaf_params=2.)
    right = tree.get_children(root)[1]
    tree.apply_split(right, split_var='c', split_val=np.array(['a']), l_leaf_params=3., r_leaf_params=4.)
    assert tree.is_valid()
    X = root._data.X
    fit = tree.get_fit(10)
    expected = np.where(X['v1'] < 6, 1., np.where(X['c'] == 'a', 3., 4.))
    np.testing.assert_array_equal(fit, expected)
    np.testing.assert_array_equal(tree.predict(X), expected)
    # stored trees predict without their rows
    stored = tree.copy(light=True, no_data=True)
    X_new = pd.DataFrame({'v1': [0., 7., 9.], 'c': pd.Categorical(['b', 'a', 'b'], categories=['a', 'b'])})
    np.testing.assert_array_equal(stored.predict(X_new), [1., 3., 4.])

def test_tree_remove_node():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=6., l_leaf_params=1., r_leaf_params=2.)
    removed = sum(tree.remove_node(child) for child in tree.get_children(root))
    assert removed == 2
    root.reset_split_info()
    assert tree.is_stump()
    assert tree.is_valid()

def test_tree_update_split():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=5., l_leaf_params=1., r_leaf_params=2.)
    tree.update_split(root, 'v1', 8.)
    left, right = tree.get_children(root)
    assert left.get_nobs() == 7 and right.get_nobs() == 3
    assert tree.is_valid()
    with pytest.raises(InvalidTreeError):
        tree.update_split(root, 'v1', 10.)

def test_tree_is_equal_and_copy():
    tree1 = create_simple_tree()
    tree2 = create_simple_tree()
    assert tree1.is_equal(tree2, hard=0)
    tree1.apply_split(tree1.get_root(), split_var='v1', split_val=5., l_leaf_params=1., r_leaf_params=2.)
    assert not tree1.is_equal(tree2, hard=0)
    tree2.apply_split(tree2.get_root(), split_var='v1', split_val=5., l_leaf_params=1., r_leaf_params=2.)
    assert tree1.is_equal(tree2, hard=3)
    tree_light = tree1.copy(light=True)
    assert tree_light.is_valid()
    # the copy can grow without touching the original
    leaf = tree_light.get_children(tree_light.get_root())[0]
    tree_light.apply_split(leaf, split_var='v1', split_val=3., l_leaf_params=0., r_leaf_params=0.)
    assert tree1.get_n_leaves() == 2 and tree_light.get_n_leaves() == 3
    tree_deep = copy.deepcopy(tree1)
    assert tree_deep.is_equal(tree1, hard=3)

# =============================================================================
# Tests for GaussianBART
# =============================================================================
def test_gaussian_bart_run(regression_data):
    X, y, _ = regression_data
    X_test = X.iloc[:15]
    model = GaussianBART(X, y, X_test=X_test, n_trees=10, iters=30, burnin=10, thinning=1,
                         store_forest_spacing=5, seed=42, debug=True)
    res = model.run()
    for key in ['y_hat', 'y_hat_test', 'sigma', 'counts', 's', 'tree_term_reg', 'move_counters', 'timings', 'setup', 'data']:
        assert key in res, f"Missing key '{key}' in result"
    assert res['y_hat'].shape == (20, 100)
    assert res['y_hat_test'].shape == (20, 15)
    assert res['counts'].shape == (20, 5)
    assert np.all(res['sigma'] > 0)
    assert np.all(res['tree_term_reg'] >= 1)
    assert res['setup']['n_trees'] == 10
    assert all(tree.is_valid() for tree in model.forest)
    # the last sweep is saved, test rows are training rows
    np.testing.assert_allclose(res['y_hat_test'][-1], res['y_hat'][-1][:15])
    pred = model.predict(X_test)
    assert pred.shape == (4, 15)

def test_gaussian_bart_fits(regression_data):
    X, y, _ = regression_data
    model = GaussianBART(X, y, n_trees=20, iters=100, burnin=50, seed=1)
    res = model.run()
    post_mean = res['y_hat'].mean(axis=0)
    assert np.mean((post_mean - y)**2) < 0.5*np.var(y)
    assert res['counts'].mean(axis=0).sum() > 0

def test_gaussian_bart_reproducible(regression_data):
    X, y, _ = regression_data
    res1 = GaussianBART(X, y, n_trees=5, iters=15, burnin=5, seed=7).run()
    res2 = GaussianBART(X, y, n_trees=5, iters=15, burnin=5, seed=7).run()
    np.testing.assert_array_equal(res1['sigma'], res2['sigma'])

def test_gaussian_bart_input_errors(regression_data):
    X, y, _ = regression_data
    with pytest.raises(TypeError):
        GaussianBART(X.to_numpy(), y)
    with pytest.raises(InvalidDataError):
        GaussianBART(X, y[:50])
    with pytest.raises(ValueError):
        GaussianBART(X, y, seed='abc')
    with pytest.raises(ValueError):
        GaussianBART(X, y, seed=1.5)
    with pytest.raises(InvalidDataError):
        GaussianBART(X, y, X_test=X.drop(columns='v1'))
    model = GaussianBART(X, y, n_trees=3, iters=5, burnin=10)
    assert model.iters == 15
    with pytest.raises(ValueError):
        model.predict(X)

def test_gaussian_stump_llik_and_prior(regression_data):
    X, y, _ = regression_data
    model = GaussianBART(X, y, n_trees=4, alpha=0.9, seed=3)
    model._set_partial_state(0)
    tree = model.forest[0]
    # stump: residuals are jointly normal with covariance sigma^2 I + tau^2 11'
    n = model.n
    cov = model.sigma**2*np.eye(n) + model.tau**2*np.ones((n, n))
    expected = scipy.stats.multivariate_normal.logpdf(model.resid, mean=np.zeros(n), cov=cov)
    assert model.calc_llik(tree) == pytest.approx(expected)
    assert model.calc_log_tree_prob(tree) == pytest.approx(np.log(1 - 0.9))

def test_gaussian_grow_acceptance_prob(regression_data):
    X, y, _ = regression_data
    # any drawn split is admissible with single-row leaves
    model = GaussianBART(X, y, n_trees=4, node_min_size=1, seed=3)
    model._set_partial_state(0)
    tree = model.forest[0]
    new_tree = model.grow_copy(tree)
    assert tree.is_stump() and new_tree.get_n_leaves() == 2
    p = model.get_acceptance_prob(tree, new_tree, 'grow')
    assert 0 <= p <= 1
    assert np.isfinite(model.calc_log_tree_prob(new_tree))
    with pytest.raises(InvalidTreeError):
        model.prune_copy(tree)


def create_model_with_tree(n=40):
    X = pd.DataFrame({'v1': np.arange(float(n)), 'v2': np.tile(np.arange(10.), n // 10)})
    y = np.random.default_rng(0).normal(size=n)
    model = GaussianBART(X, y, n_trees=2, node_min_size=1, seed=0, debug=True)
    model._set_partial_state(0)
    return model, model.forest[0]

def test_swap_with_same_rule_children():
    model, tree = create_model_with_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=20., l_leaf_params=0., r_leaf_params=0.)
    left, right = tree.get_children(root)
    tree.apply_split(left, split_var='v2', split_val=5., l_leaf_params=0., r_leaf_params=0.)
    tree.apply_split(right, split_var='v2', split_val=5., l_leaf_params=0., r_leaf_params=0.)
    new_tree = model.swap_copy(tree)
    assert new_tree.is_valid()
    new_root = new_tree.get_root()
    assert new_root.get_split_info()[:2] == ('v2', 5.)
    for child in new_tree.get_children(new_root):
        # both children take the former rule of the parent
        assert child.get_split_info()[:2] == ('v1', 20.)
        assert child.get_nobs() == 20
        assert [leaf.get_nobs() for leaf in new_tree.get_children(child)] == [10, 10]
    assert model.trans_prob_log('swap') == 0.
    # the current tree is left untouched
    assert root.get_split_info()[:2] == ('v1', 20.)
    assert left.get_split_info()[:2] == ('v2', 5.)

def test_swap_to_empty_child_fails():
    model, tree = create_model_with_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=20., l_leaf_params=0., r_leaf_params=0.)
    left = tree.get_children(root)[0]
    tree.apply_split(left, split_var='v1', split_val=10., l_leaf_params=0., r_leaf_params=0.)
    # after swapping, rows below 10 would be split again at 20
    with pytest.raises(InvalidTreeError):
        model.swap_copy(tree)
    assert root.get_split_info()[:2] == ('v1', 20.)
    assert tree.is_valid()

def test_update_split_to_empty_child_fails():
    tree = create_simple_tree(node_min_size=1)
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=6., l_leaf_params=1., r_leaf_params=2.)
    left = tree.get_children(root)[0]
    tree.apply_split(left, split_var='v1', split_val=3., l_leaf_params=1., r_leaf_params=2.)
    with pytest.raises(InvalidTreeError):
        tree.update_split(root, 'v1', 3.)

def test_change_copy():
    model, tree = create_model_with_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var='v1', split_val=20., l_leaf_params=0., r_leaf_params=0.)
    for _ in range(10):
        new_tree = model.change_copy(tree)
        assert new_tree.is_valid()
        assert sum(leaf.get_nobs() for leaf in new_tree.get_leaves()) == 40
    assert model.trans_prob_log('change') == 0.
    assert root.get_split_info()[:2] == ('v1', 20.)
    with pytest.raises(InvalidTreeError):
        model.change_copy(model.forest[1])

def test_grow_prune_ratio_reversible(regression_data):
    X, y, _ = regression_data
    model = GaussianBART(X, y, n_trees=4, node_min_size=1, seed=11)
    model._set_partial_state(0)
    tree = model.forest[0]
    grown = model.grow_copy(tree)
    log_grow = model.trans_prob_log('grow')
    log_acc_grow = log_grow + model.calc_llik(grown) - model.calc_llik(tree)
    pruned = model.prune_copy(grown)
    log_prune = model.trans_prob_log('prune')
    log_acc_prune = log_prune + model.calc_llik(pruned) - model.calc_llik(grown)
    assert pruned.is_stump()
    assert log_grow == pytest.approx(-log_prune)
    assert log_acc_grow == pytest.approx(-log_acc_prune)

def test_forest_store_keeps_last_forests(regression_data):
    X, y, _ = regression_data
    model = GaussianBART(X, y, n_trees=3, iters=20, burnin=10, store_forest_spacing=1, max_stored_forests=4, seed=6)
    res = model.run()
    assert len(model.forest_store) == 4
    assert all(snap is not None for snap in model.forest_store)
    # ten forests were stored in a buffer of four, the last one sits in the second slot
    np.testing.assert_allclose(sorted(snap['sigma'] for snap in model.forest_store), sorted(res['sigma'][-4:]))
    pred = model.predict(X)
    assert pred.shape == (4, 100)
    np.testing.assert_allclose(pred[1], res['y_hat'][-1])
    np.testing.assert_allclose(pred[0], res['y_hat'][-2])
def test_split_probs_and_update_s(regression_data):
    X, y, _ = regression_data
    probs = np.array([[0.5, 0., 0.], [0.5, 0., 0.], [0., 1., 0.], [0., 0., 0.5], [0., 0., 0.5]])
    model = GaussianBART(X, y, n_trees=10, split_probs=probs, group_names=['a', 'b', 'c'], update_s=True,
                         iters=30, burnin=10, seed=5)
    res = model.run()
    assert res['s'].shape == (20, 3)
    np.testing.assert_allclose(res['s'].sum(axis=1), 1.)
    assert res['counts'].shape == (20, 3)
    n_internal = sum(len(tree.get_nonleaf_nodes()) for tree in model.forest)
    assert res['counts'][-1].sum() == n_internal
    assert res['setup']['group_names'] == ['a', 'b', 'c']
    with pytest.raises(InvalidDataError):
        GaussianBART(X, y, split_probs=probs[:, :2])
    with pytest.raises(InvalidDataError):
        GaussianBART(X, y, split_probs=probs*2)

# =============================================================================
# Tests for NegBinBART
# =============================================================================
def test_negbin_bart_run(count_data):
    _, X, y, groups, _ = count_data
    X_test, levels = counterfactual_design(X, groups['color'])
    probs = group_split_probs(X.columns, groups)
    model = NegBinBART(X, y, X_test=X_test, n_trees=10, split_probs=probs, iters=25, burnin=5, seed=42, verbose='v')
    res = model.run()
    for key in ['lambda', 'lambda_test', 'k', 'lam0', 'counts', 's', 'move_counters', 'timings', 'setup', 'data']:
        assert key in res, f"Missing key '{key}' in result"
    assert res['lambda'].shape == (20, 80)
    assert res['lambda_test'].shape == (20, 320)
    assert res['counts'].shape == (20, 4)
    assert np.all(res['lambda'] > 0)
    assert np.all(res['k'] > 0) and np.all(res['lam0'] > 0)
    assert res['setup']['group_names'] == ['color', 'spine', 'width', 'weight']
    assert res['move_counters']['k_proposed'] == 25
    contrasts = level_contrasts(res['lambda_test'], levels)
    np.testing.assert_allclose(contrasts[levels].sum(axis=1), 0., atol=1e-8)
    pred = model.predict(X)
    assert pred.shape == (2, 80)
    assert np.all(pred > 0)

def test_negbin_prior_calibration(count_data):
    _, X, y, _, _ = count_data
    model = NegBinBART(X, y, n_trees=16, update_k=False, k_0=3., iters=10, burnin=2, seed=1)
    assert model.scale_lambda == pytest.approx(0.25)
    assert polygamma(1, model.a0) == pytest.approx(0.25**2)
    assert model.b0 == pytest.approx(np.exp(digamma(model.a0)))
    # the intercept prior is centred at the log of the mean count
    assert digamma(model.a00) - np.log(model.b00) == pytest.approx(np.log(np.mean(y)))
    res = model.run()
    np.testing.assert_array_equal(res['k'], 3.)

def test_negbin_leaf_marginal(count_data):
    _, X, y, _, _ = count_data
    model = NegBinBART(X, y, n_trees=5, seed=2)
    model.xi = np.random.default_rng(0).gamma(2., 0.5, size=model.n)
    model._set_partial_state(0)
    idx = np.arange(6)
    closed_form = model._leaf_log_marginal(idx)
    y_l, w_l = model.y_arr[idx], model.w[idx]

    def integrand(lam):
        log_lik = np.sum(y_l*np.log(w_l*lam) - w_l*lam - gammaln(y_l + 1))
        log_prior = scipy.stats.gamma.logpdf(lam, model.a0, scale=1/model.b0)
        return np.exp(log_lik + log_prior - closed_form)

    peak = (model.a0 + y_l.sum())/(model.b0 + w_l.sum())
    total, _ = quad(integrand, 0, 50*peak, points=[peak], limit=200)
    assert total == pytest.approx(1., rel=1e-4)


def test_negbin_recovers_k():
    rng = np.random.default_rng(3)
    df = sim_negbin(400, rng, k=2.)
    X, y, _ = build_design_matrix(df, ['color', 'spine', 'width', 'weight'], response='satell', factors=['color', 'spine'])
    res = NegBinBART(X, y, n_trees=20, iters=300, burnin=100, seed=3).run()
    assert 1. < np.mean(res['k']) < 5.
def test_negbin_input_errors(count_data):
    _, X, y, _, _ = count_data
    with pytest.raises(InvalidDataError):
        NegBinBART(X, y + 0.5)
    with pytest.raises(InvalidDataError):
        NegBinBART(X, -y - 1)
    with pytest.raises(ValueError):
        NegBinBART(X, y, k_0=0.)

# =============================================================================
# Tests for posterior summaries
# =============================================================================
@pytest.fixture
def additive_draws():
    rng = np.random.default_rng(11)
    n = 60
    df = pd.DataFrame({'x': rng.uniform(size=n), 'g': rng.choice(['a', 'b', 'c'], size=n)})
    effect = df['g'].map({'a': 0., 'b': 1., 'c': -1.}).to_numpy()
    slopes = rng.normal(2., 0.1, size=(40, 1))
    fhat = slopes*df['x'].to_numpy() + effect + rng.normal(0, 0.01, size=(40, 1))
    return df, fhat

def test_additive_summary(additive_draws):
    df, fhat = additive_draws
    summ = additive_summary('r ~ C(g) + x', fhat, df)
    assert summ.terms == ['C(g)', 'x']
    assert summ.term_types == {'C(g)': 'categorical', 'x': 'numerical'}
    assert summ.rsq.shape == (40,)
    np.testing.assert_allclose(summ.rsq, 1.)
    x_term = summ.summary[summ.summary['term'] == 'x']
    np.testing.assert_allclose(x_term['x'], df['x'])
    assert x_term['level'].isna().all()
    np.testing.assert_allclose(x_term['mean'], 2*(df['x'] - df['x'].mean()), atol=0.05)
    assert (x_term['lower'] <= x_term['upper']).all()
    np.testing.assert_allclose(summary_rsq('r ~ C(g) + x', fhat, df), summ.rsq)
    # dropping x loses a share of the variance of each draw
    assert np.all(summary_rsq('C(g)', fhat, df) < 0.99)


def test_additive_summary_factor_and_spline(additive_draws):
    df, fhat = additive_draws
    summ = additive_summary('r ~ C(g) + bs(x, df=4)', fhat, df)
    assert summ.term_types == {'C(g)': 'categorical', 'bs(x, df=4)': 'numerical'}
    assert summ.summary['x'].dtype == np.float64
    g_term = summ.summary[summ.summary['term'] == 'C(g)']
    assert set(g_term['level']) == {'a', 'b', 'c'}
    assert g_term['x'].isna().all()
    spline = summ.summary[summ.summary['term'] == 'bs(x, df=4)']
    np.testing.assert_allclose(spline['x'], df['x'])
    fig = additive_summary_plot(summ, title='factor and spline')
    assert len(fig.axes) == 3

def test_additive_summary_keyword_named_like_column():
    rng = np.random.default_rng(8)
    # a column named df must not be taken for the df keyword of the spline
    data = pd.DataFrame({'df': rng.uniform(size=50), 'width': rng.uniform(20., 30., size=50)})
    fhat = np.sin(data['width'].to_numpy()/3) + rng.normal(0, 0.01, size=(10, 1))
    summ = additive_summary('bs(width, df=4)', fhat, data)
    np.testing.assert_allclose(summ.summary['x'], data['width'])
def test_additive_summary_errors(additive_draws):
    df, fhat = additive_draws
    with pytest.raises(ValueError):
        additive_summary('r ~ x', fhat[:, :10], df)
    with pytest.raises(ValueError):
        additive_summary('r ~ 1', fhat, df)

def test_level_contrasts():
    pred = np.concatenate([np.full((3, 5), 1.), np.full((3, 5), 2.), np.full((3, 5), 6.)], axis=1)
    contrasts = level_contrasts(pred, ['a', 'b', 'c'])
    assert list(contrasts.columns) == ['iter', 'a', 'b', 'c']
    np.testing.assert_allclose(contrasts[['a', 'b', 'c']].to_numpy(), np.tile([-2., -1., 3.], (3, 1)))
    long = long_contrasts(contrasts, name='color')
    assert long.shape == (9, 3)
    assert list(long.columns) == ['iter', 'color', 'average']
    with pytest.raises(ValueError):
        level_contrasts(pred[:, :14], ['a', 'b', 'c'])

def test_fit_glm_nb():
    rng = np.random.default_rng(5)
    df = sim_negbin(300, rng, k=2.)
    fit = fit_glm_nb('satell ~ C(color) + C(spine) + width + weight', df)
    assert 'width' in fit.params.index
    assert 'alpha' in fit.params.index
    assert np.all(np.isfinite(fit.params))

# =============================================================================
# Tests for evaluation functions
# =============================================================================
def test_effective_sample_size():
    rng = np.random.default_rng(0)
    iid = rng.normal(size=2000)
    assert 1000 < bbeval.effective_sample_size(iid) <= 2000
    ar = np.empty(2000)
    ar[0] = 0.
    for t in range(1, 2000):
        ar[t] = 0.9*ar[t-1] + rng.normal()
    assert bbeval.effective_sample_size(ar) < 400
    assert bbeval.effective_sample_size(np.ones(10)) == 10

def test_posterior_interval():
    draws = np.arange(101.)
    lower, upper = bbeval.posterior_interval(draws, alpha=0.1)
    assert lower == pytest.approx(5.) and upper == pytest.approx(95.)
    with pytest.raises(ValueError):
        bbeval.posterior_interval(draws, alpha=1.5)

def test_acceptance_rates_and_summary(regression_data):
    X, y, _ = regression_data
    res = GaussianBART(X, y, n_trees=5, iters=20, burnin=5, seed=9).run()
    rates = bbeval.acceptance_rates(res)
    assert set(['all', 'grow', 'prune', 'change', 'swap']) <= set(rates.index)
    assert 0 <= rates['all'] <= 1
    table = bbeval.summarize_draws(res)
    assert list(table.index) == ['sigma', 'tree_term_reg']
    for col in ['mean', 'sd', 'lower', 'upper', 'ess']:
        assert col in table.columns

# =============================================================================
# Tests for utility functions
# =============================================================================
def test_distribution_helpers():
    rng = np.random.default_rng(4)
    assert utils.trigamma_inv(polygamma(1, 3.)) == pytest.approx(3.)
    draws = np.array([utils.invgamma_rvs(3., 2., rng) for _ in range(4000)])
    assert np.all(draws > 0)
    assert draws.mean() == pytest.approx(1., rel=0.1)
    with pytest.raises(ValueError):
        utils.trigamma_inv(0.)

def test_plots(regression_data, additive_draws):
    X, y, _ = regression_data
    res = GaussianBART(X, y, n_trees=5, iters=15, burnin=5, seed=9).run()
    utils.plot_param_hist(res, key='sigma', title='sigma')
    utils.plot_trace(res, key='sigma')
    utils.plot_variable_counts(res)
    contrasts = level_contrasts(np.random.default_rng(0).normal(size=(10, 6)), ['a', 'b'])
    utils.plot_contrasts(contrasts)
    df, fhat = additive_draws
    additive_summary_plot(additive_summary('C(g) + x', fhat, df), title='summary')

# =============================================================================
# Run tests if executed as a script
# =============================================================================
if __name__ == "__main__":
    pytest.main([__file__])

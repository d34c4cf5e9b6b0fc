"""Bayesian Additive Regression Trees (BART) models.

This module implements the BART base class and its likelihood-specific
subclasses. A BART model represents the regression function as a sum of
trees and samples their posterior with a Bayesian backfitting MCMC: each
tree in turn is updated with a Metropolis-Hastings move conditional on all
the others, then its leaves are drawn from their conjugate full conditional.

- GaussianBART: continuous response with Gaussian noise.
- NegBinBART: overdispersed counts with a log-linear sum of trees.
"""

import numpy as np
import scipy.stats
from scipy.special import gammaln, digamma
import time
import pandas as pd
from typing import Sequence, Any
import numpy.typing as npt
from tqdm import tqdm
import humanize
from .node import Node
from .node_data import NodeData, NodeDataGaussian, NodeDataLogLinear
from .tree import Tree
from .exceptions import InvalidTreeError, AbstractMethodError, InvalidDataError
from .utils import my_choice, invgamma_rvs, trigamma_inv
from .mytyping import NDArrayFloat, NDArrayInt

MOVES = ('grow', 'prune', 'change', 'swap')


class BART():
    """
    Base class for Bayesian Additive Regression Trees.

    This class provides methods for initializing the forest, running the MCMC,
    computing tree priors, proposing tree moves (grow, prune, change, swap),
    tracking split-variable usage and predicting from the stored posterior forests.

    Likelihood-specific methods are abstract and implemented in derived classes.

    Parameters
    ----------
    X : pd.DataFrame
        Feature data. Numeric columns are split with ``x < c``, categorical
        columns with ``x in subset``.
    y : pd.Series or array-like
        Response data.
    X_test : pd.DataFrame or None, optional
        Rows where posterior draws of the regression function are saved during the run (default None).
    n_trees : int, optional
        Number of trees (default 200).
    alpha : float, optional
        Hyperparameter for the tree prior (default 0.95).
    beta : float, optional
        Hyperparameter controlling the split probability decay with depth (default 2).
    node_min_size : int, optional
        Minimum observations per node (default 5).
    split_probs : array-like or pd.DataFrame or None, optional
        p x G matrix of within-group split probabilities, one row per column of
        X and one column per group of variables; each column sums to one. A split
        variable is chosen by drawing a group with probability s_g, then a
        column with probability split_probs[j, g]. Default None: each column
        is its own group.
    group_names : Sequence[str] or None, optional
        Names of the groups (default: the columns of split_probs if it is a
        DataFrame, otherwise the columns of X or 'g0', 'g1', ...).
    update_s : bool, optional
        If True, the group probabilities s are given a Dirichlet(alpha_s/G)
        prior and updated after every sweep (default False, s is uniform).
    alpha_s : float, optional
        Concentration of the Dirichlet prior on s (default 1).
    iters : int, optional
        Total number of MCMC sweeps over the forest (default 1250).
    burnin : int, optional
        Number of burn-in sweeps (default 250).
    thinning : int, optional
        Thinning factor (default 1).
    store_forest_spacing : int, optional
        Spacing for storing forest copies used by predict (default 10).
    max_stored_forests : int, optional
        Maximum number of stored forests (default 500). Caps the total memory consumption.
    move_prob : Sequence[float], optional
        Probabilities for the moves (grow, prune, change, swap) (default [0.25,0.25,0.4,0.1]).
    verbose : str, optional
        Verbosity level.
    seed : int or np.random.Generator, optional
        Random seed or generator (default 45).
    debug : bool, optional
        If True, enables debugging assertions (default False).

    Attributes
    ----------
    forest : list[Tree]
        The current trees.
    s : NDArrayFloat
        Current probabilities of each group of variables.
    """
    tree_class = Tree
    node_data_class: type[NodeData] = NodeData

    def __init__(self, X: pd.DataFrame, y: pd.Series | npt.ArrayLike,
                 X_test: pd.DataFrame | None = None,
                 n_trees: int = 200,
                 alpha: float = 0.95, beta: float = 2.0,
                 node_min_size: int = 5,
                 split_probs: npt.ArrayLike | pd.DataFrame | None = None,
                 group_names: Sequence[str] | None = None,
                 update_s: bool = False, alpha_s: float = 1.0,
                 iters: int = 1250, burnin: int = 250, thinning: int = 1,
                 store_forest_spacing: int = 10, max_stored_forests: int = 500,
                 move_prob: Sequence[float] = [0.25, 0.25, 0.4, 0.1],
                 verbose: str = '', seed: int | np.random.Generator = 45, debug: bool = False):

        if not isinstance(X, pd.DataFrame):
            raise TypeError('X must be a pandas DataFrame')
        y_arr = np.asarray(y, dtype=float)
        if y_arr.ndim != 1 or y_arr.shape[0] != X.shape[0]:
            raise InvalidDataError(f'y must be one-dimensional with {X.shape[0]} elements')
        if np.any(~np.isfinite(y_arr)):
            raise InvalidDataError('y contains missing or infinite values')
        if X.shape[0] < node_min_size:
            raise InvalidDataError('Fewer observations than the minimum node size')
        if n_trees < 1:
            raise ValueError('n_trees must be at least 1')
        if thinning < 1 or store_forest_spacing < 1 or max_stored_forests < 1:
            raise ValueError('thinning, store_forest_spacing and max_stored_forests must be positive')

        # the sampler only needs positional access to the rows
        self.X = X.reset_index(drop=True)
        self.y = y
        self.y_arr = y_arr
        self.n = X.shape[0]
        if X_test is not None:
            if not isinstance(X_test, pd.DataFrame):
                raise TypeError('X_test must be a pandas DataFrame')
            missing = set(X.columns).difference(X_test.columns)
            if len(missing) > 0:
                raise InvalidDataError(f'X_test is missing columns {sorted(missing)}')
            X_test = X_test[list(X.columns)].reset_index(drop=True)
        self.X_test = X_test

        self.n_trees = int(n_trees)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.node_min_size = node_min_size
        self.iters = iters
        self.burnin = burnin
        self.thinning = thinning
        self.store_forest_spacing = store_forest_spacing
        self.max_stored_forests = max_stored_forests
        self.move_prob = np.array(move_prob, dtype=float)
        if self.move_prob.shape != (4,) or np.any(self.move_prob < 0) or self.move_prob.sum() <= 0:
            raise ValueError('move_prob must contain four non-negative weights for grow, prune, change, swap')
        self.move_prob = self.move_prob/self.move_prob.sum()
        self.update_s = update_s
        self.alpha_s = float(alpha_s)
        self.verbose = verbose
        self.debug = debug
        self.orig_seed = seed

        if isinstance(seed, (int, np.integer)):
            self.rng = np.random.default_rng(int(seed))
        elif isinstance(seed, np.random.Generator):
            self.rng = seed
        else:
            raise ValueError(f'Seed must be an int or a numpy random generator, {type(seed)} was given..')

        self._init_split_probs(split_probs, group_names)

        self.mh_move_data: dict = {}
        self.move_counters = {'accepted': 0, 'proposed': 0, 'failed_error': 0, 'failed_prob': 0}
        for move in MOVES:
            self.move_counters[f'{move}_proposed'] = 0
            self.move_counters[f'{move}_accepted'] = 0

        self.has_run = False
        self.forest_store: list[dict | None] = []

        self._init()

    def _init_split_probs(self, split_probs, group_names):
        """
        Validate the split probability matrix and set the group of each column.

        A column belongs to the group where its within-group probability is the
        largest; this is the group its splits are counted in.
        """
        columns = list(self.X.columns)
        p = len(columns)
        if split_probs is None:
            probs = np.eye(p)
            default_names = [str(c) for c in columns]
        else:
            if isinstance(split_probs, pd.DataFrame):
                if set(split_probs.index) == set(columns):
                    split_probs = split_probs.loc[columns]
                default_names = [str(c) for c in split_probs.columns]
            else:
                default_names = None
            probs = np.asarray(split_probs, dtype=float)
            if probs.ndim != 2 or probs.shape[0] != p:
                raise InvalidDataError(f'split_probs must be a matrix with {p} rows, one per column of X')
            if np.any(probs < 0):
                raise InvalidDataError('split_probs must be non-negative')
            if not np.allclose(probs.sum(axis=0), 1):
                raise InvalidDataError('Each column of split_probs must sum to one')
            if np.any(probs.sum(axis=1) == 0):
                raise InvalidDataError('Every column of X must belong to at least one group')
            if default_names is None:
                default_names = [f'g{g}' for g in range(probs.shape[1])]
        G = probs.shape[1]
        if group_names is None:
            group_names = default_names
        if len(group_names) != G:
            raise InvalidDataError(f'group_names must have {G} elements')

        self.split_probs = probs
        self.group_names = list(group_names)
        self.n_groups = G
        self.col_group = np.argmax(probs, axis=1)
        self.col_pos = {c: j for j, c in enumerate(columns)}
        self.s = np.full(G, 1./G)
        self.var_probs = self._calc_var_probs()

    def _calc_var_probs(self) -> dict[str, float]:
        w = self.split_probs @ self.s
        return {c: float(w[j]) for c, j in self.col_pos.items()}

    def _init(self):
        """
        Initialize the forest as stumps and the likelihood-specific state.
        """
        if self.iters < self.burnin:
            self.iters = self.iters + self.burnin

        self._init_model()

        self.forest: list[Tree] = [self.tree_class(root_node_data=self._make_root_data(), rng=self.rng,
                                                   node_min_size=self.node_min_size, debug=self.debug)
                                   for _ in range(self.n_trees)]
        self.tree_fits = np.array([tree.get_fit(self.n) for tree in self.forest])
        self.fit = self.tree_fits.sum(axis=0)

    def _make_root_data(self) -> NodeData:
        raise AbstractMethodError()

    def _init_model(self):
        raise AbstractMethodError()

    def run(self):
        """
        Run the MCMC algorithm.

        Returns
        -------
        dict
            A dictionary containing the posterior draws, the split-variable
            counts, the group probabilities, the average number of leaves,
            move counters, timings, setup parameters, and data information.
        """
        if len(self.verbose) > 0:
            print(f'Running {self.__class__.__name__} with {self.n_trees} trees on {self.n} observations')
        self.current_iter = 0
        start_time = time.time()
        out = self._run()
        end_time = time.time()

        tot_sweeps = self.iters
        elap_time = max(end_time - start_time, 1e-9)
        elap_time_human = humanize.precisedelta(int(elap_time))
        if self.verbose:
            print(f'Elapsed time: {elap_time_human}, Tot sweeps: {tot_sweeps}, Sweeps/min: {int(tot_sweeps/elap_time*60)}/min')

        timings = {'elap_time': elap_time, 'tot_sweeps': tot_sweeps, 'sweeps/min': int(tot_sweeps/elap_time*60), 'elap_time_human': elap_time_human}
        out.update({'timings': timings})
        setup = {'n_trees': self.n_trees, 'alpha': self.alpha, 'beta': self.beta, 'node_min_size': self.node_min_size,
                 'split_probs': self.split_probs, 'group_names': self.group_names, 'update_s': self.update_s, 'alpha_s': self.alpha_s,
                 'iters': self.iters, 'burnin': self.burnin, 'thinning': self.thinning,
                 'store_forest_spacing': self.store_forest_spacing, 'max_stored_forests': self.max_stored_forests,
                 'move_prob': self.move_prob, 'seed': self.orig_seed, 'debug': self.debug, 'verbose': self.verbose}
        setup.update(self._model_setup())
        data = {'X': self.X, 'y': self.y, 'X_test': self.X_test}
        out.update({'move_counters': self.move_counters, 'setup': setup, 'data': data})
        return out

    def _run(self):
        """
        Execute the main MCMC loop.

        Returns
        -------
        dict
            A dictionary with the saved draws.
        """
        self.has_run = True

        store_size = int(np.ceil((self.iters - self.burnin)/self.thinning))
        forest_store_size_needed = int(np.ceil((self.iters - self.burnin)/self.store_forest_spacing))
        forest_store = [None for i in range(min(forest_store_size_needed, self.max_stored_forests))]
        forest_store_counter = 0
        counts_store = np.zeros((store_size, self.n_groups), dtype=int)
        s_store = np.empty((store_size, self.n_groups))
        tree_term_reg = np.empty(store_size)  # avg terminal regions per tree
        self._init_store(store_size)

        # store counter
        c = 0
        if len(self.verbose) > 0:
            _range = tqdm(range(self.iters))
        else:
            _range = range(self.iters)
        for i in _range:
            self.current_iter = i

            self._sweep()

            if self.debug:
                assert all(tree.is_valid() for tree in self.forest)
                assert np.allclose(self.fit, self.tree_fits.sum(axis=0))

            # store draws
            if (i >= self.burnin) and ((i - self.burnin) % self.thinning == 0):
                self._store(c)
                counts_store[c] = self.get_variable_counts()
                s_store[c] = self.s
                tree_term_reg[c] = np.mean([tree.get_n_leaves() for tree in self.forest])
                c += 1

            # storing forests
            if (i >= self.burnin) and ((i - self.burnin) % self.store_forest_spacing == 0):
                forest_store[forest_store_counter] = self._snapshot()  # type: ignore
                forest_store_counter += 1
                if forest_store_counter >= self.max_stored_forests:
                    forest_store_counter = 0

        self.forest_store = forest_store
        res = {'counts': counts_store, 's': s_store, 'tree_term_reg': tree_term_reg, 'forest_store': forest_store}
        res.update(self._get_store())
        return res

    def _sweep(self):
        """
        One Bayesian backfitting sweep: update every tree given the others, then
        the split probabilities and the likelihood-specific parameters.
        """
        for t in range(self.n_trees):
            self.current_tree = t
            self._set_partial_state(t)

            # sample a move
            move = self.rng.choice(MOVES, p=self.move_prob)

            # Force grow on the first sweep
            if self.current_iter < 1:
                move = 'grow'

            self._update_once(t, move)

            # Update leaf parameters whether accepted or not
            self.resample_leaf_params(self.forest[t])
            self._refresh_tree_fit(t)

        # avoid accumulating rounding errors in the running total
        self.fit = self.tree_fits.sum(axis=0)

        if self.update_s:
            self.resample_s()
        self._update_global_params()

    def _refresh_tree_fit(self, t: int):
        new_fit = self.forest[t].get_fit(self.n)
        self.fit += new_fit - self.tree_fits[t]
        self.tree_fits[t] = new_fit

    def _update_once(self, t: int, move: str) -> None:
        """
        Perform one Metropolis-Hastings update of tree t using the specified move.

        Parameters
        ----------
        t : int
            Index of the tree in the forest.
        move : str
            The move type ('grow', 'prune', 'change', or 'swap').
        """
        tree = self.forest[t]
        self.move_counters['proposed'] += 1
        self.move_counters[f'{move}_proposed'] += 1
        self.mh_move_data = {}
        try:
            new_tree = self.update_tree(tree, move)
            success = True
        except InvalidTreeError:
            success = False
            self.move_counters['failed_error'] += 1

        if success:
            log_a = self.get_log_acceptance_prob(tree, new_tree, move)
            self.mh_move_data = {}
            if np.log(self.rng.random()) <= log_a:
                self.forest[t] = new_tree
                self.move_counters['accepted'] += 1
                self.move_counters[f'{move}_accepted'] += 1
            else:
                self.move_counters['failed_prob'] += 1

    def get_log_acceptance_prob(self, tree: Tree, new_tree: Tree, move: str) -> float:
        """
        Compute the log acceptance probability for a proposed tree move.

        Parameters
        ----------
        tree : Tree
            The current tree.
        new_tree : Tree
            The proposed tree after a move.
        move : str
            The move type.

        Returns
        -------
        float
            The log acceptance probability (at most 0).
        """
        proposal_llik = self.calc_llik(new_tree)
        current_llik = self.calc_llik(tree)

        trans_prob = self.trans_prob_log(move)
        return min(trans_prob + (proposal_llik - current_llik), 0.)

    def get_acceptance_prob(self, tree: Tree, new_tree: Tree, move: str) -> float:
        return float(np.exp(self.get_log_acceptance_prob(tree, new_tree, move)))

    def calc_llik(self, tree: Tree) -> float:
        """
        Compute the integrated log-likelihood of a tree given the other trees.

        The leaf parameters are integrated out; the partial residuals (or
        weights) of the tree being updated must have been set.

        Parameters
        ----------
        tree : Tree

        Returns
        -------
        float
            The integrated log-likelihood.
        """
        return float(sum(self._leaf_log_marginal(leaf.get_idx()) for leaf in tree.get_leaves()))

    def trans_prob_log(self, move: str) -> float:
        """
        Log of the transition ratio times the tree prior ratio of a move.

        Change and swap draw the new rules from the prior, so the ratio is 1.
        For grow (and prune, its inverse) this is the CGM98 ratio.

        Parameters
        ----------
        move : str
            Move type.

        Returns
        -------
        float
            The log ratio.
        """
        if move in ['change', 'swap']:
            return 0.

        alpha, beta = self.alpha, self.beta
        b = self.mh_move_data['b']
        depth = self.mh_move_data['depth']
        n_int_with_2_child = self.mh_move_data['n_int_with_2_child']

        res = np.log(b) + np.log(alpha) + 2*np.log(1-alpha/(2+depth)**beta) - np.log((1+depth)**beta - alpha) - np.log(n_int_with_2_child)

        if move == 'grow':
            return np.log(self.move_prob[1]/self.move_prob[0]) + res
        else:
            return np.log(self.move_prob[0]/self.move_prob[1]) - res

    def calc_grow_prune_mh_data(self, node_to_split: Node, tot_parents_with_two_leaves: int, b: int):
        """
        Store move-specific information needed for the grow/prune move acceptance ratio.

        Parameters
        ----------
        node_to_split : Node
            The node that was split (or pruned).
        tot_parents_with_two_leaves : int
            Number of internal nodes with two leaves, in the bigger of the two trees.
        b : int
            The number of leaves that can be split, in the smaller of the two trees.
        """
        self.mh_move_data = {'depth': node_to_split.depth, 'n_int_with_2_child': tot_parents_with_two_leaves, 'b': b}

    def _n_growable_leaves(self, tree: Tree) -> int:
        return sum(leaf.get_nobs() >= self.node_min_size for leaf in tree.get_leaves())

    def update_tree(self, tree: Tree, move: str) -> Tree:
        """
        Propose a new tree from the current one with the specified move.

        Parameters
        ----------
        tree : Tree
            The current tree, left untouched.
        move : str
            The move type ('grow', 'prune', 'change', 'swap').

        Returns
        -------
        Tree
            The proposed tree.

        Raises
        ------
        InvalidTreeError
            If the move cannot be applied.
        """
        if move == 'grow':
            new_tree = self.grow_copy(tree)
        elif move == 'prune':
            new_tree = self.prune_copy(tree)
        elif move == 'change':
            new_tree = self.change_copy(tree)
        elif move == 'swap':
            new_tree = self.swap_copy(tree)
        else:
            raise ValueError(f'Unknown move {move}')

        if self.debug:
            if not new_tree.is_valid():
                raise ValueError('not-a-tree returned, BUG!!')
        return new_tree

    def grow_copy(self, tree: Tree) -> Tree:
        """
        Pick a leaf which has >= node_min_size observations. Split it using a rule drawn from the prior. Return a copied tree.
        """
        new_tree = tree.copy(light=True)

        node_to_split = new_tree.sample_leaf(self.node_min_size)

        split_var, split_val = node_to_split.get_new_split(self.var_probs)

        # leaf parameters are integrated out, they are redrawn after the move
        l_leaf_params, r_leaf_params = self.sample_prior_leaf_param(), self.sample_prior_leaf_param()

        new_tree.apply_split(node_to_split, split_var, split_val, l_leaf_params, r_leaf_params)

        if self.debug:
            assert tree.get_n_leaves()+1 == new_tree.get_n_leaves()

        self.calc_grow_prune_mh_data(node_to_split=node_to_split,
                                     tot_parents_with_two_leaves=len(new_tree.get_parents_with_two_leaves()),
                                     b=self._n_growable_leaves(tree))
        return new_tree

    def prune_copy(self, tree: Tree) -> Tree:
        """
        Pick a node with two leaves as children and prune them. Return a copied tree.
        """
        new_tree = tree.copy(light=True)

        # no operation can be done on a stump
        if new_tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot prune.')

        cands = new_tree.get_parents_with_two_leaves()
        if len(cands) == 0:
            raise InvalidTreeError('No available nodes to prune')

        to_prune: Node = my_choice(self.rng, cands)
        children = new_tree.get_children(to_prune)

        removed = 0
        removed += new_tree.remove_node(children[0])
        removed += new_tree.remove_node(children[1])

        if self.debug:
            assert removed == 2
            assert new_tree.get_n_leaves() + 1 == tree.get_n_leaves()

        # the pruned node is now a leaf
        to_prune.reset_split_info()
        to_prune.update_node_params(self.sample_prior_leaf_param())

        self.calc_grow_prune_mh_data(node_to_split=to_prune,
                                     tot_parents_with_two_leaves=len(cands),
                                     b=self._n_growable_leaves(new_tree))
        return new_tree

    def change_copy(self, tree: Tree) -> Tree:
        """
        Pick an internal node and change its splitting rule. Return a copied tree.
        """
        new_tree = tree.copy(light=True)

        if new_tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot change.')

        cands = new_tree.get_nonleaf_nodes()
        to_change: Node = my_choice(self.rng, cands)

        split_var, split_val = to_change.get_new_split(self.var_probs)

        new_tree.update_split(to_change, split_var, split_val)
        return new_tree

    def swap_copy(self, tree: Tree) -> Tree:
        """
        Pick a parent-child pair of internal nodes and swap their splitting rules. If the other child has the same rule, then swap parent with both children. Return a copied tree.
        """
        new_tree = tree.copy(light=True)

        if new_tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot swap.')

        cands = new_tree.get_nonleaf_nodes(filter_root=True)
        if len(cands) == 0:
            raise InvalidTreeError('No available nodes to swap')

        c1 = my_choice(self.rng, cands)
        parent = new_tree.get_parent(c1)
        c2 = new_tree.get_sibling(c1)

        # check if c1 and c2 have the same split rule
        has_same_rule = False
        c1_s_var, c1_s_val, is_cat = c1.get_split_info()
        if not is_cat: c1_s_val = [c1_s_val]
        c2_s_var, c2_s_val, is_cat = c2.get_split_info()
        if not is_cat: c2_s_val = [c2_s_val]
        if c1_s_var == c2_s_var and not c2.is_leaf():
            if set(c1_s_val) == set(c2_s_val):
                has_same_rule = True

        # swap rules
        par_s_var, par_s_val, _ = parent.get_split_info()
        if has_same_rule:
            c2.update_split_info(par_s_var, par_s_val)
        temp_s_var, temp_s_val, _ = c1.get_split_info()
        c1.update_split_info(par_s_var, par_s_val)
        parent.update_split_info(temp_s_var, temp_s_val)

        # update rows recursively
        new_tree.update_subtree_data(parent)
        return new_tree

    def get_p_split(self, depth: int) -> float:
        """
        Compute the probability of splitting a node at a given depth.

        Parameters
        ----------
        depth : int
            The node depth.

        Returns
        -------
        float
            The splitting probability.
        """
        return self.alpha/(1+depth)**self.beta

    def calc_log_tree_prob(self, tree: Tree) -> float:
        """
        Compute the log prior probability of the tree structure P(T|X).

        Each internal node contributes the probability of splitting at its
        depth, of choosing its variable (given the current group probabilities)
        and of choosing its value; each leaf the probability of not splitting.

        Parameters
        ----------
        tree : Tree

        Returns
        -------
        float
            The log prior probability.
        """
        def _calc_rec(node: Node, tot: float) -> float:
            split_var, _, _ = node.get_split_info()
            var_probs = node.get_var_probs(self.var_probs)
            n_vals = node.calc_n_splits(split_var)

            depth = node.depth
            tot += np.log(self.get_p_split(depth)) + np.log(var_probs[split_var]) - np.log(n_vals)

            for child in tree.get_children(node):
                if child.is_leaf():
                    tot += np.log(1-self.get_p_split(depth+1))
                else:
                    tot = _calc_rec(child, tot)
            return tot

        if tree.is_stump():
            return float(np.log(1-self.get_p_split(0)))
        return float(_calc_rec(tree.get_root(), 0.))

    def get_variable_counts(self) -> NDArrayInt:
        """
        Number of splits on each group of variables across the current forest.

        Returns
        -------
        NDArrayInt
            Array of length n_groups.
        """
        split_vars = [v for tree in self.forest for v in tree.get_split_vars()]
        if len(split_vars) == 0:
            return np.zeros(self.n_groups, dtype=int)
        groups = self.col_group[[self.col_pos[v] for v in split_vars]]
        return np.bincount(groups, minlength=self.n_groups)

    def resample_s(self):
        """
        Resample the group probabilities from their Dirichlet full conditional.
        """
        counts = self.get_variable_counts()
        self.s = self.rng.dirichlet(self.alpha_s/self.n_groups + counts)
        # guard against exact zeros from the Dirichlet sampler with small concentrations
        self.s = np.maximum(self.s, np.finfo(float).tiny)
        self.s = self.s/self.s.sum()
        self.var_probs = self._calc_var_probs()

    def resample_leaf_params(self, tree: Tree):
        """
        Resample the leaf parameters of a tree from their full conditionals.
        """
        for leaf in tree.get_leaves():
            leaf.update_node_params(self._sample_leaf_posterior(leaf.get_idx()))

    def forest_predict(self, trees: Sequence[Tree], X: pd.DataFrame) -> NDArrayFloat:
        """Sum of the leaf values of the given trees on the rows of X."""
        return np.sum([tree.predict(X) for tree in trees], axis=0)

    def predict(self, X: pd.DataFrame) -> NDArrayFloat:
        """
        Posterior draws of the regression function at new rows.

        Uses the forests stored during the run (every store_forest_spacing
        sweeps after burn-in, up to max_stored_forests).

        Parameters
        ----------
        X : pd.DataFrame
            Rows to predict, with the training columns.

        Returns
        -------
        NDArrayFloat
            Array of shape (stored forests, rows).
        """
        if not self.has_run:
            raise ValueError('The model must be run before predicting')
        missing = set(self.X.columns).difference(X.columns)
        if len(missing) > 0:
            raise InvalidDataError(f'X is missing columns {sorted(missing)}')
        X = X[list(self.X.columns)].reset_index(drop=True)
        snapshots = [snap for snap in self.forest_store if snap is not None]
        out = np.empty((len(snapshots), X.shape[0]))
        for i, snap in enumerate(snapshots):
            out[i] = self._response_scale(self.forest_predict(snap['trees'], X), snap)
        return out

    def _snapshot(self) -> dict:
        snap = {'trees': [tree.copy(light=True, no_data=True) for tree in self.forest]}
        snap.update(self._global_state())
        return snap

    def sample_prior_leaf_param(self) -> Any:
        raise AbstractMethodError()

    def _sample_leaf_posterior(self, idx: NDArrayInt) -> Any:
        raise AbstractMethodError()

    def _leaf_log_marginal(self, idx: NDArrayInt) -> float:
        """
        Integrated log-likelihood of the rows of a leaf, leaf parameter integrated out.

        Raises
        ------
        AbstractMethodError
            Always raised; to be implemented in a subclass.
        """
        raise AbstractMethodError()

    def _set_partial_state(self, t: int):
        """Set the partial residuals (or weights) used to update tree t."""
        raise AbstractMethodError()

    def _update_global_params(self):
        raise AbstractMethodError()

    def _init_store(self, store_size: int):
        raise AbstractMethodError()

    def _store(self, c: int):
        raise AbstractMethodError()

    def _get_store(self) -> dict:
        raise AbstractMethodError()

    def _global_state(self) -> dict:
        return {}

    def _response_scale(self, total: NDArrayFloat, snap: dict) -> NDArrayFloat:
        raise AbstractMethodError()

    def _model_setup(self) -> dict:
        return {}


class GaussianBART(BART):
    """
    BART for a continuous response with Gaussian noise (CGM10).

    y = sum_t g(x; T_t, M_t) + eps, eps ~ N(0, sigma^2). The response is
    rescaled to [-0.5, 0.5]; leaves have a N(0, tau^2) prior with
    tau = 0.5 / (k sqrt(n_trees)), and sigma^2 a scaled inverse chi-square
    prior with nu degrees of freedom and scale lambda chosen so that
    P(sigma < sigest) = q.

    Parameters
    ----------
    k : float, optional
        Prior shrinkage of the leaves (default 2).
    nu : float, optional
        Degrees of freedom of the noise prior (default 3).
    q : float, optional
        Prior quantile of sigma matching sigest (default 0.9).
    sigest : float or None, optional
        Rough estimate of sigma on the original scale. Default: residual
        standard deviation of a linear regression, or the standard deviation
        of y if there are too few observations.
    sigma_0 : float or None, optional
        Initial value of sigma on the original scale (default sigest).
    *args, **kwargs
        Passed to BART.
    """
    node_data_class = NodeDataGaussian

    def __init__(self, *args, k: float = 2.0, nu: float = 3.0, q: float = 0.9,
                 sigest: float | None = None, sigma_0: float | None = None, **kwargs):
        if not 0 < q < 1:
            raise ValueError('q must be in (0, 1)')
        self.k = float(k)
        self.nu = float(nu)
        self.q = float(q)
        self.sigest = sigest
        self.sigma_0 = sigma_0
        super().__init__(*args, **kwargs)

    def _init_model(self):
        y = self.y_arr
        self.y_min = y.min()
        y_range = y.max() - y.min()
        self.y_range = y_range if y_range > 0 else 1.
        self.y_scaled = (y - self.y_min)/self.y_range - 0.5
        self.tau = 0.5/(self.k*np.sqrt(self.n_trees))

        if self.sigest is None:
            self.sigest = self.estimate_sigma()
        sigest_scaled = self.sigest/self.y_range
        if not sigest_scaled > 0:
            sigest_scaled = 1.
        # P(sigma^2 < sigest^2) = q with sigma^2 ~ nu lambda / chi2_nu
        self.lambd = sigest_scaled**2 * scipy.stats.chi2.ppf(1-self.q, self.nu)/self.nu
        self.sigma = (self.sigma_0 if self.sigma_0 is not None else self.sigest)/self.y_range
        if not self.sigma > 0:
            self.sigma = sigest_scaled

    def estimate_sigma(self) -> float:
        """
        Residual standard deviation of a least squares fit of y on X.

        Returns
        -------
        float
            The estimate, on the original scale of y.
        """
        design = pd.get_dummies(self.X, drop_first=True, dtype=float)
        n, p = design.shape
        if n <= p + 1:
            return float(np.std(self.y_arr, ddof=1)) if n > 1 else 1.
        A = np.column_stack([np.ones(n), design.to_numpy()])
        coef, _, rank, _ = np.linalg.lstsq(A, self.y_arr, rcond=None)
        rss = np.sum((self.y_arr - A @ coef)**2)
        return float(np.sqrt(rss/(n - rank)))

    def _make_root_data(self) -> NodeData:
        return self.node_data_class(X=self.X, idx=np.arange(self.n), mu=0., rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)

    def _set_partial_state(self, t: int):
        self.resid = self.y_scaled - (self.fit - self.tree_fits[t])

    def _leaf_log_marginal(self, idx: NDArrayInt) -> float:
        r = self.resid[idx]
        n_obs = r.shape[0]
        sum_r, ss_r = r.sum(), (r**2).sum()
        s2, t2 = self.sigma**2, self.tau**2
        return (-n_obs/2*np.log(2*np.pi*s2) + 0.5*np.log(s2/(s2 + n_obs*t2))
                - ss_r/(2*s2) + t2*sum_r**2/(2*s2*(s2 + n_obs*t2)))

    def get_posterior_params_mu(self, idx: NDArrayInt) -> tuple[float, float]:
        """
        Get the parameters of the full conditional of a leaf value.

        Parameters
        ----------
        idx : NDArrayInt
            Rows of the leaf.

        Returns
        -------
        tuple
            (m, std) for the normal full conditional.
        """
        r = self.resid[idx]
        prec = r.shape[0]/self.sigma**2 + 1/self.tau**2
        m = r.sum()/self.sigma**2/prec
        return m, 1/np.sqrt(prec)

    def _sample_leaf_posterior(self, idx: NDArrayInt) -> float:
        m, std = self.get_posterior_params_mu(idx)
        return self.rng.normal(m, std)

    def sample_prior_leaf_param(self) -> float:
        return self.rng.normal(0., self.tau)

    def resample_sigma(self):
        """
        Resample sigma from its inverse gamma full conditional.
        """
        sse = np.sum((self.y_scaled - self.fit)**2)
        a = (self.nu + self.n)/2
        scale = (self.nu*self.lambd + sse)/2
        self.sigma = float(np.sqrt(invgamma_rvs(a=a, scale=scale, rng=self.rng)))

    def _update_global_params(self):
        self.resample_sigma()

    def _response_scale(self, total: NDArrayFloat, snap: dict) -> NDArrayFloat:
        return (total + 0.5)*self.y_range + self.y_min

    def _global_state(self) -> dict:
        return {'sigma': self.sigma*self.y_range}

    def _init_store(self, store_size: int):
        self.y_hat_store = np.empty((store_size, self.n))
        self.sigma_store = np.empty(store_size)
        self.y_hat_test_store = np.empty((store_size, self.X_test.shape[0])) if self.X_test is not None else None

    def _store(self, c: int):
        self.y_hat_store[c] = self._response_scale(self.fit, {})
        self.sigma_store[c] = self.sigma*self.y_range
        if self.y_hat_test_store is not None:
            self.y_hat_test_store[c] = self._response_scale(self.forest_predict(self.forest, self.X_test), {})

    def _get_store(self) -> dict:
        return {'y_hat': self.y_hat_store, 'y_hat_test': self.y_hat_test_store, 'sigma': self.sigma_store}

    def _model_setup(self) -> dict:
        return {'k': self.k, 'nu': self.nu, 'q': self.q, 'sigest': self.sigest, 'lambd': self.lambd, 'tau': self.tau}


class NegBinBART(BART):
    """
    Log-linear BART for overdispersed counts.

    y_i ~ NegBin(mean lambda_i, size k), with
    lambda_i = lam0 * prod_t lam_t(x_i): every tree multiplies the mean by
    the value of the leaf the row falls into. The negative binomial is
    represented as a gamma mixture of Poissons,
    y_i ~ Poisson(xi_i lambda_i), xi_i ~ Gamma(k, rate k), so that leaves have
    conjugate gamma full conditionals.

    Leaves have a Gamma(a0, rate b0) prior with trigamma(a0) = scale_lambda^2
    and b0 = exp(digamma(a0)): the log of a leaf has mean 0 and standard
    deviation scale_lambda. The intercept lam0 has the same kind of prior with
    standard deviation scale_lambda_0 on the log scale, centred at log(mean(y)).
    1/sqrt(k) has a half-Cauchy(0, 1) prior and k is updated by random walk
    Metropolis on log(k).

    Parameters
    ----------
    scale_lambda : float or None, optional
        Prior standard deviation of the log of each leaf (default 1/sqrt(n_trees)).
    scale_lambda_0 : float, optional
        Prior standard deviation of the log of the intercept (default 1).
    k_0 : float, optional
        Initial value of k (default 1).
    update_k : bool, optional
        If False, k stays at k_0 (default True).
    k_proposal_sd : float, optional
        Standard deviation of the random walk on log(k) (default 0.5).
    *args, **kwargs
        Passed to BART. n_trees defaults to 50.
    """
    node_data_class = NodeDataLogLinear

    def __init__(self, *args, n_trees: int = 50, scale_lambda: float | None = None, scale_lambda_0: float = 1.0,
                 k_0: float = 1.0, update_k: bool = True, k_proposal_sd: float = 0.5, **kwargs):
        if scale_lambda is None:
            scale_lambda = 1/np.sqrt(n_trees)
        if not scale_lambda > 0 or not scale_lambda_0 > 0:
            raise ValueError('scale_lambda and scale_lambda_0 must be positive')
        if not k_0 > 0:
            raise ValueError('k_0 must be positive')
        self.scale_lambda = float(scale_lambda)
        self.scale_lambda_0 = float(scale_lambda_0)
        self.k = float(k_0)
        self.k_0 = float(k_0)
        self.update_k = update_k
        self.k_proposal_sd = float(k_proposal_sd)
        super().__init__(*args, n_trees=n_trees, **kwargs)

    def _init_model(self):
        y = self.y_arr
        if np.any(y < 0) or np.any(y != np.round(y)):
            raise InvalidDataError('NegBinBART needs non-negative integer counts')

        self.a0 = trigamma_inv(self.scale_lambda**2)
        self.b0 = float(np.exp(digamma(self.a0)))
        ybar = y.mean() if y.mean() > 0 else 1.
        self.a00 = trigamma_inv(self.scale_lambda_0**2)
        self.b00 = float(np.exp(digamma(self.a00) - np.log(ybar)))

        self.lam0 = float(ybar)
        self.xi = np.ones(self.n)
        self.move_counters_k = {'k_proposed': 0, 'k_accepted': 0}

    def _make_root_data(self) -> NodeData:
        return self.node_data_class(X=self.X, idx=np.arange(self.n), lam=1., rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)

    def get_lambda(self) -> NDArrayFloat:
        """Current mean of each training row."""
        return self.lam0*np.exp(self.fit)

    def _set_partial_state(self, t: int):
        self.w = self.xi*self.lam0*np.exp(self.fit - self.tree_fits[t])

    def _leaf_stats(self, idx: NDArrayInt) -> tuple[float, float]:
        return self.y_arr[idx].sum(), self.w[idx].sum()

    def _leaf_log_marginal(self, idx: NDArrayInt) -> float:
        a0, b0 = self.a0, self.b0
        y, w = self.y_arr[idx], self.w[idx]
        s_y, s_w = y.sum(), w.sum()
        return (a0*np.log(b0) - gammaln(a0) + gammaln(a0 + s_y) - (a0 + s_y)*np.log(b0 + s_w)
                + np.sum(y*np.log(w) - gammaln(y + 1)))

    def get_posterior_params_lam(self, idx: NDArrayInt) -> tuple[float, float]:
        """
        Get the parameters of the gamma full conditional of a leaf value.

        Parameters
        ----------
        idx : NDArrayInt
            Rows of the leaf.

        Returns
        -------
        tuple
            (shape, rate)
        """
        s_y, s_w = self._leaf_stats(idx)
        return self.a0 + s_y, self.b0 + s_w

    def _sample_leaf_posterior(self, idx: NDArrayInt) -> float:
        shape, rate = self.get_posterior_params_lam(idx)
        return max(self.rng.gamma(shape, 1/rate), np.finfo(float).tiny)

    def sample_prior_leaf_param(self) -> float:
        return max(self.rng.gamma(self.a0, 1/self.b0), np.finfo(float).tiny)

    def resample_lam0(self):
        """
        Resample the intercept from its gamma full conditional.
        """
        shape = self.a00 + self.y_arr.sum()
        rate = self.b00 + np.sum(self.xi*np.exp(self.fit))
        self.lam0 = max(float(self.rng.gamma(shape, 1/rate)), np.finfo(float).tiny)

    def log_posterior_k(self, k: float, lam: NDArrayFloat) -> float:
        """
        Log full conditional of k, the mixing variables integrated out, up to a constant.

        Parameters
        ----------
        k : float
            Size parameter.
        lam : NDArrayFloat
            Mean of each row.

        Returns
        -------
        float
        """
        llik = np.sum(scipy.stats.nbinom.logpmf(self.y_arr, k, k/(k + lam)))
        # half-Cauchy on phi = 1/sqrt(k), with |dphi/dk| = k^(-3/2)/2
        log_prior = scipy.stats.halfcauchy.logpdf(1/np.sqrt(k)) + np.log(0.5) - 1.5*np.log(k)
        return float(llik + log_prior)

    def resample_k(self):
        """
        Random walk Metropolis step on log(k).
        """
        lam = self.get_lambda()
        log_k_new = np.log(self.k) + self.k_proposal_sd*self.rng.standard_normal()
        k_new = float(np.exp(log_k_new))
        self.move_counters_k['k_proposed'] += 1
        # the log(k) terms are the Jacobian of the log transform
        log_a = (self.log_posterior_k(k_new, lam) + log_k_new) - (self.log_posterior_k(self.k, lam) + np.log(self.k))
        if np.log(self.rng.random()) <= log_a:
            self.k = k_new
            self.move_counters_k['k_accepted'] += 1

    def resample_xi(self):
        """
        Resample the gamma mixing variables given k and the means.
        """
        lam = self.get_lambda()
        self.xi = self.rng.gamma(self.k + self.y_arr, 1/(self.k + lam))

    def _update_global_params(self):
        self.resample_lam0()
        if self.update_k:
            self.resample_k()
        self.resample_xi()

    def _response_scale(self, total: NDArrayFloat, snap: dict) -> NDArrayFloat:
        return snap['lam0']*np.exp(total)

    def _global_state(self) -> dict:
        return {'lam0': self.lam0, 'k': self.k}

    def _init_store(self, store_size: int):
        self.lambda_store = np.empty((store_size, self.n))
        self.k_store = np.empty(store_size)
        self.lam0_store = np.empty(store_size)
        self.lambda_test_store = np.empty((store_size, self.X_test.shape[0])) if self.X_test is not None else None

    def _store(self, c: int):
        self.lambda_store[c] = self.get_lambda()
        self.k_store[c] = self.k
        self.lam0_store[c] = self.lam0
        if self.lambda_test_store is not None:
            self.lambda_test_store[c] = self._response_scale(self.forest_predict(self.forest, self.X_test), self._global_state())

    def _get_store(self) -> dict:
        self.move_counters.update(self.move_counters_k)
        return {'lambda': self.lambda_store, 'lambda_test': self.lambda_test_store, 'k': self.k_store, 'lam0': self.lam0_store}

    def _model_setup(self) -> dict:
        return {'scale_lambda': self.scale_lambda, 'scale_lambda_0': self.scale_lambda_0, 'a0': self.a0, 'b0': self.b0,
                'a00': self.a00, 'b00': self.b00, 'k_0': self.k_0, 'update_k': self.update_k, 'k_proposal_sd': self.k_proposal_sd}

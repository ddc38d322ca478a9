"""
MCMC Sampling Functions.

Step functions applied by the compiled iteration kernel:
- mh_lambda_step: Gamma random walk on one lambda component
- mh_r_step: Gamma random walk on one r_m (no selection)
- select_component_step: Switch / refine move on one r_m
- select_group_step: Group-level switch for a multi-member group
- run_step_with_retry: One retry with a fresh key when V cannot be factorized
- make_iteration_fn: Full iteration over a resolved update plan

Every step function has the signature

    step_fn(key, state, data, control, step) -> (new_state, codes, ok)

where codes holds one outcome per acceptance slot of the step
(-1 not attempted, 0 rejected, 1 accepted) and ok is False when a matrix
that must be positive definite could not be factorized.
"""

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from ..kernel import VComps, factorize_v, log_marginal_likelihood, update_distance
from ..proposals import (
    gamma_walk_proposal,
    gamma_switch_on_proposal,
    gamma_switch_on_logpdf,
    log_walk_proposal,
)
from ..proposals.common import is_valid_positive
from ..selection import unit_matrix
from ..update_plan import StepType
from .gibbs import gibbs_beta_sigsq_step
from .priors import (
    beta_binomial_log_prior,
    lambda_log_prior,
    log_within_group_prior,
    r_log_prior,
)
from .types import ACCEPTED, NOT_ATTEMPTED, REJECTED


LOG_2 = float(np.log(2.0))


def _current_vcomps(state) -> VComps:
    return VComps(L=state.L, logdet=state.logdet, ok=jnp.bool_(True))


def _residual(state, data):
    return data.y - data.X @ state.beta


def _metropolis_accept(key, log_ratio):
    """Accept with probability min(1, exp(log_ratio)); NaN counts as rejection."""
    safe_ratio = jnp.nan_to_num(log_ratio, nan=-jnp.inf, posinf=jnp.inf, neginf=-jnp.inf)
    log_uniform = jnp.log(random.uniform(key, shape=()))
    return log_uniform < safe_ratio


def _choose_state(accept, proposed, current):
    return jax.tree_util.tree_map(lambda p, c: jnp.where(accept, p, c), proposed, current)


def _outcome(attempted, accept):
    return jnp.where(attempted, jnp.where(accept, ACCEPTED, REJECTED), NOT_ATTEMPTED).astype(jnp.int8)


def _n_active_units(G, delta):
    return jnp.sum((G @ delta) > 0)


def mh_lambda_step(key, state, data, control, step):
    """
    Gamma random-walk M-H update of lambda_k.

    log alpha = l(lambda*) - l(lambda) + log p(lambda*) - log p(lambda)
                + log q(lambda | lambda*) - log q(lambda* | lambda)
    """
    k = step.index
    resid = _residual(state, data)
    ll_current = log_marginal_likelihood(_current_vcomps(state), resid, state.sigsq)

    lam_k = state.lam[k]
    proposal, log_hastings, key = gamma_walk_proposal(key, lam_k, control.lambda_jump[k])
    valid = is_valid_positive(proposal)
    lam_star = state.lam.at[k].set(jnp.where(valid, proposal, lam_k))

    vcomps = factorize_v(state.D, lam_star, data.uu)
    ll_proposed = log_marginal_likelihood(vcomps, resid, state.sigsq)

    log_ratio = (ll_proposed - ll_current
                 + lambda_log_prior(lam_star[k], k, control) - lambda_log_prior(lam_k, k, control)
                 + log_hastings)
    log_ratio = jnp.where(valid & vcomps.ok, log_ratio, -jnp.inf)

    accept = _metropolis_accept(key, log_ratio)
    proposed = state.replace(lam=lam_star, L=vcomps.L, logdet=vcomps.logdet)
    new_state = _choose_state(accept, proposed, state)
    codes = _outcome(True, accept)[None]
    return new_state, codes, ~valid | vcomps.ok


def mh_r_step(key, state, data, control, step):
    """
    Gamma random-walk M-H update of r_m when r_m is not subject to selection.

    Proposals outside the prior support get -inf prior density and are
    rejected; non-finite or non-positive proposals are rejected outright.
    """
    m = step.index
    resid = _residual(state, data)
    ll_current = log_marginal_likelihood(_current_vcomps(state), resid, state.sigsq)

    r_m = state.r[m]
    proposal, log_hastings, key = gamma_walk_proposal(key, r_m, control.r_jump)
    valid = is_valid_positive(proposal)
    r_m_star = jnp.where(valid, proposal, r_m)

    D_star = update_distance(state.D, data.Z, m, r_m, r_m_star)
    vcomps = factorize_v(D_star, state.lam, data.uu)
    ll_proposed = log_marginal_likelihood(vcomps, resid, state.sigsq)

    log_ratio = (ll_proposed - ll_current
                 + r_log_prior(r_m_star, control) - r_log_prior(r_m, control)
                 + log_hastings)
    log_ratio = jnp.where(valid & vcomps.ok, log_ratio, -jnp.inf)

    accept = _metropolis_accept(key, log_ratio)
    proposed = state.replace(r=state.r.at[m].set(r_m_star), D=D_star,
                             L=vcomps.L, logdet=vcomps.logdet)
    new_state = _choose_state(accept, proposed, state)
    codes = _outcome(True, accept)[None]
    return new_state, codes, ~valid | vcomps.ok


def select_component_step(key, state, data, control, step):
    """
    Two-move spike-and-slab update of r_m.

    Move choice: when delta_m = 0 the switch move is used; when delta_m = 1,
    switch or refine with probability 1/2 each.

    Switch on (delta 0 -> 1), r* ~ q1 = Gamma(mean r_muprop, sd r_jump1):
        log alpha = dl + d log p(delta) + log pi(r*) - log q1(r*) - log 2
    Switch off (delta 1 -> 0), r* = 0:
        log alpha = dl + d log p(delta) - log pi(r) + log q1(r) + log 2
    Refine (delta stays 1), log r* = log r + N(0, r_jump2^2):
        log alpha = dl + log pi(r*) - log pi(r) + log r* - log r

    d log p(delta) uses the beta-binomial prior over the step's units, or the
    truncated within-group prior for within-group steps. A within-group
    switch that would leave the group empty is rejected, and a within-group
    step on an inactive group is not attempted.
    """
    m = step.index
    move_key, on_key, refine_key, accept_key = random.split(key, 4)

    delta_m = state.delta[m]
    r_m = state.r[m]
    is_on = delta_m > 0
    is_switch = ~is_on | (random.uniform(move_key, shape=()) < 0.5)

    # --- switch proposal ---
    r_on, log_q_on, _ = gamma_switch_on_proposal(on_key, control.r_muprop, control.r_jump1)
    r_switch = jnp.where(is_on, 0.0, r_on)
    delta_switch = state.delta.at[m].set(jnp.where(is_on, 0.0, 1.0))

    if step.within:
        members = jnp.asarray(step.members)
        n_members = len(step.members)
        k_cur = jnp.sum(state.delta[members])
        k_new = jnp.sum(delta_switch[members])
        attempted = k_cur > 0
        log_prior_delta = (log_within_group_prior(k_new, n_members, control.a_p0_within,
                                                  control.b_p0_within)
                           - log_within_group_prior(k_cur, n_members, control.a_p0_within,
                                                    control.b_p0_within))
        log_prior_delta = jnp.where(k_new > 0, log_prior_delta, -jnp.inf)
    else:
        G = jnp.asarray(unit_matrix(step.units, data.Z.shape[1]))
        n_units = len(step.units)
        attempted = jnp.bool_(True)
        log_prior_delta = (beta_binomial_log_prior(_n_active_units(G, delta_switch), n_units,
                                                   control.a_p0, control.b_p0)
                           - beta_binomial_log_prior(_n_active_units(G, state.delta), n_units,
                                                     control.a_p0, control.b_p0))

    on_terms = r_log_prior(r_on, control) - log_q_on - LOG_2
    off_terms = -r_log_prior(r_m, control) + gamma_switch_on_logpdf(
        r_m, control.r_muprop, control.r_jump1) + LOG_2
    switch_ratio = log_prior_delta + jnp.where(is_on, off_terms, on_terms)
    switch_valid = is_on | is_valid_positive(r_on)

    # --- refine proposal ---
    safe_r_m = jnp.where(is_on, r_m, 1.0)
    r_refine, log_hastings, _ = log_walk_proposal(refine_key, safe_r_m, control.r_jump2)
    refine_ratio = r_log_prior(r_refine, control) - r_log_prior(safe_r_m, control) + log_hastings
    refine_valid = is_valid_positive(r_refine)

    r_m_star = jnp.where(is_switch, r_switch, r_refine)
    valid = jnp.where(is_switch, switch_valid, refine_valid)
    r_m_star = jnp.where(valid, r_m_star, r_m)
    delta_star = jnp.where(is_switch, delta_switch, state.delta)

    resid = _residual(state, data)
    ll_current = log_marginal_likelihood(_current_vcomps(state), resid, state.sigsq)
    D_star = update_distance(state.D, data.Z, m, r_m, r_m_star)
    vcomps = factorize_v(D_star, state.lam, data.uu)
    ll_proposed = log_marginal_likelihood(vcomps, resid, state.sigsq)

    log_ratio = ll_proposed - ll_current + jnp.where(is_switch, switch_ratio, refine_ratio)
    log_ratio = jnp.where(valid & vcomps.ok & attempted, log_ratio, -jnp.inf)

    accept = _metropolis_accept(accept_key, log_ratio) & attempted
    proposed = state.replace(r=state.r.at[m].set(r_m_star), delta=delta_star, D=D_star,
                             L=vcomps.L, logdet=vcomps.logdet)
    new_state = _choose_state(accept, proposed, state)

    codes = jnp.stack([
        _outcome(attempted & is_switch, accept),
        _outcome(attempted & ~is_switch, accept),
    ])
    ok = ~attempted | ~valid | vcomps.ok
    return new_state, codes, ok


def select_group_step(key, state, data, control, step):
    """
    Group-level switch for a group with two or more members.

    Group off -> on: pick one member j uniformly, draw r_j from q1,
        log alpha = dl + d log p_groups + log W(1; n_g)
                    + log pi(r_j) - log q1(r_j) + log n_g
    Exactly one member active -> off: the reverse move, r_j = 0.
    Two or more members active: not attempted (the inner within-group pass
    must first reduce the group to one member).

    log W(k; n) is the within-group beta-binomial prior truncated to k >= 1.
    """
    members = jnp.asarray(step.members)
    n_members = len(step.members)
    pick_key, on_key, accept_key = random.split(key, 3)

    member_delta = state.delta[members]
    k_in = jnp.sum(member_delta)
    attempted = k_in <= 1
    turning_on = k_in == 0

    col_on = members[random.randint(pick_key, (), 0, n_members)]
    col_off = members[jnp.argmax(member_delta)]
    col = jnp.where(turning_on, col_on, col_off)

    r_cur = state.r[col]
    r_on, log_q_on, _ = gamma_switch_on_proposal(on_key, control.r_muprop, control.r_jump1)
    valid = ~turning_on | is_valid_positive(r_on)
    r_col_star = jnp.where(turning_on & valid, r_on, 0.0)
    delta_star = state.delta.at[col].set(jnp.where(turning_on, 1.0, 0.0))

    G = jnp.asarray(unit_matrix(step.units, data.Z.shape[1]))
    n_units = len(step.units)
    log_prior_groups = (beta_binomial_log_prior(_n_active_units(G, delta_star), n_units,
                                                control.a_p0, control.b_p0)
                        - beta_binomial_log_prior(_n_active_units(G, state.delta), n_units,
                                                  control.a_p0, control.b_p0))
    log_w1 = log_within_group_prior(1.0, n_members, control.a_p0_within, control.b_p0_within)
    log_n = float(np.log(n_members))

    on_terms = log_w1 + r_log_prior(r_on, control) - log_q_on + log_n
    off_terms = -log_w1 - r_log_prior(r_cur, control) + gamma_switch_on_logpdf(
        r_cur, control.r_muprop, control.r_jump1) - log_n

    resid = _residual(state, data)
    ll_current = log_marginal_likelihood(_current_vcomps(state), resid, state.sigsq)
    D_star = update_distance(state.D, data.Z, col, r_cur, r_col_star)
    vcomps = factorize_v(D_star, state.lam, data.uu)
    ll_proposed = log_marginal_likelihood(vcomps, resid, state.sigsq)

    log_ratio = (ll_proposed - ll_current + log_prior_groups
                 + jnp.where(turning_on, on_terms, off_terms))
    log_ratio = jnp.where(valid & vcomps.ok & attempted, log_ratio, -jnp.inf)

    accept = _metropolis_accept(accept_key, log_ratio) & attempted
    proposed = state.replace(r=state.r.at[col].set(r_col_star), delta=delta_star, D=D_star,
                             L=vcomps.L, logdet=vcomps.logdet)
    new_state = _choose_state(accept, proposed, state)

    codes = _outcome(attempted, accept)[None]
    ok = ~attempted | ~valid | vcomps.ok
    return new_state, codes, ok


# Map from StepType to step function
# Looked up once per fit by resolve_step_functions
STEP_REGISTRY = {
    StepType.GIBBS_BETA_SIGSQ: gibbs_beta_sigsq_step,
    StepType.MH_LAMBDA: mh_lambda_step,
    StepType.MH_R: mh_r_step,
    StepType.SELECT_COMPONENT: select_component_step,
    StepType.SELECT_GROUP: select_group_step,
}


def resolve_step_functions(plan):
    """Look up the step function of every plan entry (done once per fit)."""
    missing = sorted({str(s.step_type) for s in plan if s.step_type not in STEP_REGISTRY})
    if missing:
        raise ValueError(f"No step function registered for: {', '.join(missing)}")
    return tuple(STEP_REGISTRY[s.step_type] for s in plan)


def run_step_with_retry(step_fn, key, state, data, control, step):
    """
    Apply a step, retrying once with a fresh key if it reports failure.

    Returns:
        new_state: Result of the successful attempt, or the input state when
                   both attempts fail
        codes: Outcome codes of the attempt that was kept
        ok: False only when both attempts failed
    """
    first_key, retry_key = random.split(key)
    s1, c1, ok1 = step_fn(first_key, state, data, control, step)
    ok1 = jnp.asarray(ok1, dtype=bool)

    def _keep(_):
        return s1, c1, ok1

    def _retry(_):
        s2, c2, ok2 = step_fn(retry_key, state, data, control, step)
        ok2 = jnp.asarray(ok2, dtype=bool)
        return _choose_state(ok2, s2, state), c2, ok2

    return jax.lax.cond(ok1, _keep, _retry, None)


def make_iteration_fn(plan, step_fns, control, data):
    """
    Build the scan body for one full iteration over the plan.

    Carry: (state, failed, failed_iteration)
    Input: (iteration_key, iteration_number)

    Once an iteration fails every later iteration in the scan is skipped and
    reported as uncommitted; a failed iteration leaves the state untouched.
    """
    n_slots = sum(step.n_slots for step in plan)

    def _run_plan(key, state):
        keys = random.split(key, len(plan))
        codes = []
        all_ok = jnp.bool_(True)
        for i, (step, step_fn) in enumerate(zip(plan, step_fns)):
            state, step_codes, ok = run_step_with_retry(step_fn, keys[i], state, data,
                                                        control, step)
            codes.append(jnp.asarray(step_codes, dtype=jnp.int8).reshape(step.n_slots))
            all_ok = all_ok & ok
        return state, jnp.concatenate(codes), all_ok

    def iteration(carry, inputs):
        state, failed, failed_iteration = carry
        key, it = inputs

        def _skip(s):
            return s, jnp.full((n_slots,), NOT_ATTEMPTED, dtype=jnp.int8), jnp.bool_(False)

        new_state, outcomes, ok = jax.lax.cond(failed, _skip, lambda s: _run_plan(key, s), state)
        committed = ~failed & ok
        new_state = _choose_state(committed, new_state, state)
        failed_iteration = jnp.where(~failed & ~ok, it, failed_iteration)
        failed = failed | ~ok

        record = {
            'beta': new_state.beta,
            'sigsq': new_state.sigsq,
            'lam': new_state.lam,
            'r': new_state.r,
            'delta': new_state.delta,
            'outcomes': outcomes,
            'committed': committed,
        }
        return (new_state, failed, failed_iteration), record

    return iteration

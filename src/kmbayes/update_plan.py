"""
Update Plan Specification

The per-iteration schedule of a fit is resolved exactly once, before the
first iteration, into an ordered tuple of UpdateStep values. Nothing about
which steps run, in what order, or which prior counts a selection move uses
is decided while iterating; the compiled iteration kernel simply walks the
tuple.

Every iteration runs, strictly in this order:
1. GIBBS_BETA_SIGSQ - beta then sigsq from their full conditionals
2. MH_LAMBDA        - one step per lambda component
3. r updates, depending on the selection mode:
   NONE          - MH_R for every column
   COMPONENT     - SELECT_COMPONENT for selectable columns, MH_R for the rest
   HIERARCHICAL  - outer pass: SELECT_COMPONENT for singleton groups
                   (prior counted over groups), SELECT_GROUP for the others;
                   inner pass: within-group SELECT_COMPONENT for each member
                   of every multi-member group

Each step owns zero or more acceptance slots. Slot labels are concatenated in
plan order to label the outcome columns of the posterior chain.

To add a new step type:
1. Add the enum value to StepType
2. Implement the step function in mcmc/sampling.py
3. Register it in STEP_REGISTRY
4. Emit it from build_update_plan
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Tuple

from .selection import SelectionMode, SelectionSpec


class StepType(IntEnum):
    """Kinds of update applied within one iteration."""
    GIBBS_BETA_SIGSQ = 0   # Closed-form draw of beta and sigsq
    MH_LAMBDA = 1          # Gamma random walk on one lambda component
    MH_R = 2               # Gamma random walk on one r_m (no selection)
    SELECT_COMPONENT = 3   # Switch / refine move on one r_m
    SELECT_GROUP = 4       # Group-level switch for a multi-member group

    def __str__(self):
        return self.name.replace('_', ' ').title()


@dataclass(frozen=True)
class UpdateStep:
    """
    One entry of the update plan.

    Fields:
        step_type: StepType
        index: lambda component, column of Z, or group number
        members: Columns of the group the step acts within (group and
                 within-group steps)
        units: Unit membership used by the beta-binomial inclusion prior
        within: True for within-group moves (truncated within-group prior,
                a switch that would empty the group is rejected)
        slots: Labels of the acceptance slots this step records
    """
    step_type: StepType
    index: int = -1
    members: Tuple[int, ...] = ()
    units: Tuple[Tuple[int, ...], ...] = ()
    within: bool = False
    slots: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.step_type in (StepType.MH_LAMBDA, StepType.MH_R,
                              StepType.SELECT_COMPONENT, StepType.SELECT_GROUP):
            if self.index < 0:
                raise ValueError(f"{self.step_type} requires a non-negative index")
        if self.step_type == StepType.SELECT_GROUP and len(self.members) < 2:
            raise ValueError("SELECT_GROUP is only used for groups with 2+ members")
        if self.within and not self.members:
            raise ValueError("Within-group steps need the group's members")

    @property
    def n_slots(self) -> int:
        return len(self.slots)

    def __str__(self):
        if self.step_type == StepType.GIBBS_BETA_SIGSQ:
            return "gibbs(beta, sigsq)"
        if self.step_type == StepType.MH_LAMBDA:
            return f"lambda[{self.index}]"
        if self.step_type == StepType.SELECT_GROUP:
            return f"group[{self.index}]{list(self.members)}"
        suffix = ":within" if self.within else ""
        return f"r[{self.index}]{suffix}"


def _select_component(m: int, units, members=(), within=False) -> UpdateStep:
    return UpdateStep(StepType.SELECT_COMPONENT, index=m, members=tuple(members),
                      units=tuple(units), within=within,
                      slots=(f"r[{m}]:switch", f"r[{m}]:refine"))


def build_update_plan(selection: SelectionSpec, n_lambda: int = 1) -> Tuple[UpdateStep, ...]:
    """
    Resolve the ordered per-iteration update plan.

    Args:
        selection: Resolved SelectionSpec
        n_lambda: Number of lambda components

    Returns:
        Tuple of UpdateStep in execution order
    """
    plan = [UpdateStep(StepType.GIBBS_BETA_SIGSQ)]
    plan += [UpdateStep(StepType.MH_LAMBDA, index=k, slots=(f"lambda[{k}]",))
             for k in range(n_lambda)]

    M = selection.n_exposures
    units = selection.units

    if selection.mode == SelectionMode.NONE:
        plan += [UpdateStep(StepType.MH_R, index=m, slots=(f"r[{m}]",)) for m in range(M)]

    elif selection.mode == SelectionMode.COMPONENT:
        selectable = set(selection.selectable)
        for m in range(M):
            if m in selectable:
                plan.append(_select_component(m, units))
            else:
                plan.append(UpdateStep(StepType.MH_R, index=m, slots=(f"r[{m}]",)))

    else:
        for g, members in enumerate(selection.groups):
            if len(members) == 1:
                plan.append(_select_component(members[0], units))
            else:
                plan.append(UpdateStep(StepType.SELECT_GROUP, index=g, members=members,
                                       units=units, slots=(f"group[{g}]:switch",)))
        for members in selection.groups:
            if len(members) > 1:
                plan += [_select_component(m, (), members=members, within=True)
                         for m in members]

    return tuple(plan)


def plan_slot_labels(plan: Tuple[UpdateStep, ...]) -> Tuple[str, ...]:
    """Outcome column labels in plan order."""
    return tuple(label for step in plan for label in step.slots)


def describe_plan(plan: Tuple[UpdateStep, ...]) -> str:
    return " -> ".join(str(step) for step in plan)

"""
Variance-component optimization: objective wrapper, backends and driver.

Variance-component likelihoods are often flat or non-smooth near the
zero boundary and no single optimizer is reliable on every model, so the
numerical method is a configuration choice among interchangeable
backends behind one interface:

    nelder-mead  — derivative-free simplex search
    bfgs         — quasi-Newton (analytic or finite-difference gradient)
    l-bfgs-b     — box-constrained quasi-Newton
    trust-exact  — trust-region Newton with the expected information

The driver runs the selected backend, checks convergence, retries once
from a perturbed start, and raises ConvergenceError with diagnostics
when every attempt fails. Infeasible θ (SingularCovarianceError from the
likelihood engine) never escapes: the objective rejects the point with a
large penalty and the search continues elsewhere.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import warnings

import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize, approx_fprime

from pymetamv.core.exceptions import (
    ConvergenceError, FitCancelledError, SingularCovarianceError, ValidationError,
)
from pymetamv.meta._common import FitControl
from pymetamv.meta._likelihood import LikelihoodEngine, LikelihoodEval


_INFEASIBLE = 1e100


class LikelihoodObjective:
    """
    Negative log-likelihood -ℓ(θ) as seen by the optimizer backends.

    Exposes value / gradient / hessian, caches the last evaluation (the
    backends ask for value and gradient at the same point), turns
    SingularCovarianceError into a rejected evaluation, polls the
    cancellation token after every evaluation, and records ℓ at each
    accepted iterate.
    """

    def __init__(
        self,
        engine: LikelihoodEngine,
        *,
        numeric_gradient: bool = False,
        cancel=None,
    ):
        self.engine = engine
        self.numeric_gradient = numeric_gradient
        self.cancel = cancel
        self.n_evals = 0
        self.n_rejected = 0
        self.last_error: SingularCovarianceError | None = None
        self.history: list[float] = []
        self._cache: LikelihoodEval | None = None
        self._last_grad: NDArray | None = None
        self._last_info: NDArray | None = None

    def _poll(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise FitCancelledError(
                f"Fit cancelled after {self.n_evals} likelihood evaluations",
                evaluations=self.n_evals,
            )

    def _evaluate(self, theta: NDArray, gradient: bool, information: bool) -> LikelihoodEval:
        theta = np.asarray(theta, dtype=np.float64)
        cached = self._cache
        if (cached is not None and np.array_equal(cached.theta, theta)
                and (not gradient or cached.gradient is not None)
                and (not information or cached.information is not None)):
            return cached
        try:
            result = self.engine.evaluate(theta, gradient=gradient, information=information)
        finally:
            self.n_evals += 1
        self._cache = result
        self._poll()
        return result

    def value(self, theta: NDArray) -> float:
        """-ℓ(θ), or a large penalty at an infeasible θ."""
        try:
            return -self._evaluate(theta, False, False).loglik
        except SingularCovarianceError as e:
            self.n_rejected += 1
            self.last_error = e
            self._poll()
            return _INFEASIBLE

    def gradient(self, theta: NDArray) -> NDArray:
        """∇(-ℓ)(θ); analytic unless numeric_gradient is set."""
        theta = np.asarray(theta, dtype=np.float64)
        if self.numeric_gradient:
            step = np.sqrt(np.finfo(float).eps) * np.maximum(1.0, np.abs(theta))
            grad = approx_fprime(theta, self.value, step)
            self._last_grad = grad
            return grad
        try:
            grad = -self._evaluate(theta, True, False).gradient
        except SingularCovarianceError as e:
            self.n_rejected += 1
            self.last_error = e
            self._poll()
            if self._last_grad is None:
                return np.zeros_like(theta)
            return self._last_grad
        self._last_grad = grad
        return grad

    def hessian(self, theta: NDArray) -> NDArray:
        """Expected information of ℓ, the approximate Hessian of -ℓ."""
        try:
            info = self._evaluate(theta, False, True).information
        except SingularCovarianceError as e:
            self.n_rejected += 1
            self.last_error = e
            self._poll()
            if self._last_info is None:
                return np.eye(len(theta))
            return self._last_info
        self._last_info = info
        return info

    def record(self, theta: NDArray) -> None:
        """Iteration callback: remember ℓ at the accepted iterate."""
        f = self.value(theta)
        if f < _INFEASIBLE:
            self.history.append(-f)

    def gradient_norm(self, theta: NDArray) -> float:
        """Max-abs gradient of -ℓ at θ (inf at an infeasible θ)."""
        if len(theta) == 0:
            return 0.0
        if self.value(theta) >= _INFEASIBLE:
            return float('inf')
        return float(np.max(np.abs(self.gradient(theta))))


@dataclass(frozen=True)
class OptimizeOutcome:
    """Raw outcome of one backend run."""
    theta: NDArray
    fun: float
    n_iter: int
    n_fev: int
    success: bool
    message: str


class OptimizerBackend(ABC):
    """Interface for interchangeable optimization strategies."""

    name: str = ''
    uses_gradient: bool = True
    # 'gradient': success only when the gradient norm is below gtol
    # 'change': the backend's own stopping rule is trusted
    criterion: str = 'gradient'

    @abstractmethod
    def minimize(
        self,
        objective: LikelihoodObjective,
        theta0: NDArray,
        control: FitControl,
        bounds: list[tuple[float | None, float | None]],
    ) -> OptimizeOutcome:
        """Minimize -ℓ from theta0."""

    @staticmethod
    def _outcome(res) -> OptimizeOutcome:
        return OptimizeOutcome(
            theta=np.asarray(res.x, dtype=np.float64),
            fun=float(res.fun),
            n_iter=int(getattr(res, 'nit', 0)),
            n_fev=int(getattr(res, 'nfev', 0)),
            success=bool(res.success),
            message=str(getattr(res, 'message', '')),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class NelderMeadBackend(OptimizerBackend):
    """Derivative-free simplex search; converges on relative change in ℓ."""

    name = 'nelder-mead'
    uses_gradient = False
    criterion = 'change'

    def minimize(self, objective, theta0, control, bounds):
        f0 = objective.value(theta0)
        res = minimize(
            objective.value,
            theta0,
            method='Nelder-Mead',
            callback=objective.record,
            options={
                'maxiter': max(control.max_iter, 1) * max(len(theta0), 1),
                'xatol': 1e-8,
                'fatol': control.ftol * max(1.0, abs(f0)),
                'adaptive': len(theta0) > 2,
            },
        )
        return self._outcome(res)


class BFGSBackend(OptimizerBackend):
    """Quasi-Newton search; converges on the gradient norm."""

    name = 'bfgs'

    def minimize(self, objective, theta0, control, bounds):
        res = minimize(
            objective.value,
            theta0,
            jac=objective.gradient,
            method='BFGS',
            callback=objective.record,
            options={'maxiter': control.max_iter, 'gtol': control.gtol},
        )
        return self._outcome(res)


class LBFGSBBackend(OptimizerBackend):
    """Box-constrained quasi-Newton; scale parameters kept >= 0."""

    name = 'l-bfgs-b'
    criterion = 'change'

    def minimize(self, objective, theta0, control, bounds):
        res = minimize(
            objective.value,
            theta0,
            jac=objective.gradient,
            method='L-BFGS-B',
            bounds=bounds,
            callback=objective.record,
            options={
                'maxiter': control.max_iter,
                'ftol': control.ftol,
                'gtol': control.gtol,
            },
        )
        return self._outcome(res)


class TrustRegionBackend(OptimizerBackend):
    """Trust-region Newton steps with the expected information as Hessian."""

    name = 'trust-exact'

    def minimize(self, objective, theta0, control, bounds):
        res = minimize(
            objective.value,
            theta0,
            jac=objective.gradient,
            hess=objective.hessian,
            method='trust-exact',
            callback=objective.record,
            options={'maxiter': control.max_iter, 'gtol': control.gtol},
        )
        return self._outcome(res)


OPTIMIZERS: dict[str, type[OptimizerBackend]] = {
    'nelder-mead': NelderMeadBackend,
    'bfgs': BFGSBackend,
    'l-bfgs-b': LBFGSBBackend,
    'trust-exact': TrustRegionBackend,
}

_ALIASES = {
    'simplex': 'nelder-mead',
    'quasi-newton': 'bfgs',
    'trust-region': 'trust-exact',
}


def get_backend(choice) -> OptimizerBackend:
    """Resolve a backend name (or pass through a backend instance)."""
    if isinstance(choice, OptimizerBackend):
        return choice
    key = _ALIASES.get(str(choice).lower(), str(choice).lower())
    if key not in OPTIMIZERS:
        raise ValidationError(
            f"Unknown optimizer: {choice!r}. Use one of {sorted(OPTIMIZERS)}"
        )
    return OPTIMIZERS[key]()


@dataclass(frozen=True)
class DriverOutcome:
    """Converged result of the optimizer driver."""
    theta: NDArray
    loglik: float
    n_iter: int
    n_fev: int
    gradient_norm: float
    relative_change: float
    message: str
    backend: str
    restarts: int
    n_rejected: int
    history: tuple[float, ...]


class OptimizerDriver:
    """
    Runs a backend with the restart policy and convergence checks.

    Converged means the max-abs gradient of ℓ at the returned θ is below
    gtol, or, for backends that stop on the relative change in ℓ
    (nelder-mead, l-bfgs-b), that the backend reported success.
    """

    def __init__(self, control: FitControl | None = None):
        self.control = control if control is not None else FitControl()
        self.backend = get_backend(self.control.optimizer)

    def _perturb(self, theta0: NDArray, rng: np.random.Generator) -> NDArray:
        scale = np.maximum(np.abs(theta0), 0.1)
        return theta0 + self.control.perturbation * scale * rng.standard_normal(theta0.shape)

    def run(
        self,
        objective: LikelihoodObjective,
        theta0: NDArray,
        bounds: list[tuple[float | None, float | None]] | None = None,
    ) -> DriverOutcome:
        """Maximize ℓ starting from theta0.

        Raises:
            ConvergenceError: After 1 + max_restarts failed attempts.
            FitCancelledError: If the cancellation token is set.
        """
        control = self.control
        theta0 = np.asarray(theta0, dtype=np.float64)
        if bounds is None:
            bounds = [(None, None)] * len(theta0)
        rng = np.random.default_rng(control.seed)

        last_theta = theta0
        last_gnorm = None
        last_change = None
        total_iter = 0
        reason = 'max_iterations'

        for attempt in range(control.max_restarts + 1):
            start = theta0 if attempt == 0 else self._perturb(theta0, rng)
            objective.history = []
            objective.record(start)

            # A start that already satisfies gtol is returned as is
            if objective.history:
                start_gnorm = objective.gradient_norm(start)
                if start_gnorm <= control.gtol:
                    if control.verbose:
                        print(f"[{self.backend.name}] attempt {attempt + 1}: "
                              f"start point converged, |grad|={start_gnorm:.3g}")
                    return DriverOutcome(
                        theta=np.array(start, dtype=np.float64),
                        loglik=objective.history[-1],
                        n_iter=0,
                        n_fev=0,
                        gradient_norm=start_gnorm,
                        relative_change=0.0,
                        message='start point satisfies the gradient tolerance',
                        backend=self.backend.name,
                        restarts=attempt,
                        n_rejected=objective.n_rejected,
                        history=tuple(objective.history),
                    )

            outcome = self.backend.minimize(objective, start, control, bounds)
            total_iter += outcome.n_iter
            last_theta = outcome.theta

            f_final = objective.value(outcome.theta)
            if f_final >= _INFEASIBLE:
                reason = 'infeasible'
                converged = False
                last_gnorm = float('inf')
            else:
                last_gnorm = objective.gradient_norm(outcome.theta)
                hist = objective.history
                if not hist or hist[-1] != -f_final:
                    hist.append(-f_final)
                if len(hist) >= 2:
                    last_change = abs(hist[-1] - hist[-2]) / max(1.0, abs(hist[-1]))
                else:
                    last_change = 0.0
                converged = last_gnorm <= control.gtol or (
                    self.backend.criterion == 'change' and outcome.success
                )
                reason = 'max_iterations' if outcome.n_iter >= control.max_iter else 'not_converged'

            if control.verbose:
                print(f"[{self.backend.name}] attempt {attempt + 1}: "
                      f"loglik={-f_final:.6f}, iterations={outcome.n_iter}, "
                      f"|grad|={last_gnorm:.3g}, converged={converged}")

            if converged:
                return DriverOutcome(
                    theta=outcome.theta,
                    loglik=-f_final,
                    n_iter=outcome.n_iter,
                    n_fev=outcome.n_fev,
                    gradient_norm=last_gnorm,
                    relative_change=last_change,
                    message=outcome.message,
                    backend=self.backend.name,
                    restarts=attempt,
                    n_rejected=objective.n_rejected,
                    history=tuple(objective.history),
                )

            if attempt < control.max_restarts:
                warnings.warn(
                    f"{self.backend.name} did not converge "
                    f"({outcome.message}); retrying from a perturbed start",
                    RuntimeWarning,
                    stacklevel=3,
                )

        raise ConvergenceError(
            f"Optimizer '{self.backend.name}' did not converge after "
            f"{control.max_restarts + 1} attempt(s): last theta={last_theta}, "
            f"gradient norm={last_gnorm}, iterations={total_iter}",
            iterations=total_iter,
            theta=last_theta,
            gradient_norm=last_gnorm,
            final_change=last_change,
            reason=reason,
            threshold=control.gtol,
        )

"""
Profiled (restricted) log-likelihood of the multilevel meta-analysis model.

For variance components θ the marginal covariance of cluster g is

    V_g = Σ_t (S_tg ∘ Σ_t(θ_t)[l, l]) + diag(v_g)

and the fixed effects are profiled out by generalized least squares,
β̂(θ) = (XᵀV⁻¹X)⁻¹XᵀV⁻¹y. With r = y - Xβ̂(θ):

    ML:   ℓ(θ)   = -½ [n log 2π + Σ_g log|V_g| + Σ_g r_gᵀV_g⁻¹r_g]
    REML: ℓ_R(θ) = -½ [(n-p) log 2π + Σ_g log|V_g| + log|XᵀV⁻¹X| + rᵀV⁻¹r]

Every V_g is factored by Cholesky; a failure means θ is infeasible and is
reported as SingularCovarianceError. Clusters are independent given θ,
so per-cluster terms are computed separately (optionally in parallel
threads) and reduced by summation.

Derivatives use V̇_j = ∂V/∂θ_j = S ∘ (∂Σ/∂θ_j)[l, l] and r̃ = V⁻¹r:

    ∂ℓ/∂θ_j   = -½ [tr(V⁻¹V̇_j) - r̃ᵀV̇_j r̃]
    ∂ℓ_R/∂θ_j = -½ [tr(V⁻¹V̇_j) - tr((XᵀV⁻¹X)⁻¹XᵀV⁻¹V̇_jV⁻¹X) - r̃ᵀV̇_j r̃]

The expected (Fisher) information, ½ tr(PV̇_jPV̇_k) with P = V⁻¹ for ML
and the REML projection otherwise, serves as the approximate Hessian.

References:
    Viechtbauer, W. (2010). Conducting meta-analyses in R with the metafor
    package. Journal of Statistical Software, 36(3), 1-48.
    Harville, D. A. (1977). Maximum likelihood approaches to variance
    component estimation. JASA, 72(358), 320-338.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
import scipy.linalg as sla
from joblib import Parallel, delayed

from pymetamv.core.exceptions import SingularCovarianceError
from pymetamv.meta._random_effects import Cluster, GroupingBlock, n_theta


_LOG_2PI = np.log(2.0 * np.pi)


@dataclass(frozen=True)
class LikelihoodEval:
    """Result of one likelihood evaluation at θ.

    Attributes:
        theta: The evaluated θ.
        loglik: ℓ(θ) (ML) or ℓ_R(θ) (REML).
        beta: GLS estimate β̂(θ) (p,).
        vcov: (XᵀV⁻¹X)⁻¹ (p, p).
        gradient: ∂ℓ/∂θ, or None if not requested.
        information: Expected information matrix, or None if not requested.
        rss: Weighted residual sum of squares rᵀV⁻¹r.
    """
    theta: NDArray
    loglik: float
    beta: NDArray
    vcov: NDArray
    gradient: NDArray | None
    information: NDArray | None
    rss: float


@dataclass(frozen=True)
class _ClusterFactor:
    """First-pass quantities of one cluster at fixed θ."""
    chol: NDArray          # lower Cholesky factor of V_g
    A: NDArray             # V_g⁻¹X_g
    b: NDArray             # V_g⁻¹y_g
    logdet: float
    XtViX: NDArray
    XtViy: NDArray
    ytViy: float


class LikelihoodEngine:
    """
    Evaluates the profiled log-likelihood, its gradient and information.

    The engine owns read-only per-cluster slices of y, X and v; it holds
    no state that changes between evaluations, so one engine may serve
    concurrent evaluations.
    """

    def __init__(
        self,
        y: NDArray,
        X: NDArray,
        v: NDArray,
        blocks: Sequence[GroupingBlock],
        clusters: Sequence[Cluster],
        *,
        reml: bool = False,
        n_jobs: int = 1,
    ):
        self.y = np.asarray(y, dtype=np.float64)
        self.X = np.asarray(X, dtype=np.float64)
        self.v = np.asarray(v, dtype=np.float64)
        self.blocks = list(blocks)
        self.clusters = list(clusters)
        self.reml = reml
        self.n_jobs = n_jobs
        self.n, self.p = self.X.shape
        self.n_theta = n_theta(self.blocks)

        self._y_c = [self.y[c.index] for c in self.clusters]
        self._X_c = [self.X[c.index] for c in self.clusters]
        self._v_c = [self.v[c.index] for c in self.clusters]

    # ------------------------------------------------------------------
    # Marginal covariance
    # ------------------------------------------------------------------

    def _sigmas(self, theta: NDArray) -> list[NDArray]:
        return [b.structure.sigma(theta[b.theta_slice]) for b in self.blocks]

    def _jacobians(self, theta: NDArray) -> list[NDArray]:
        return [b.structure.jacobian(theta[b.theta_slice]) for b in self.blocks]

    def _cluster_covariance(self, g: int, sigmas: list[NDArray]) -> NDArray:
        cluster = self.clusters[g]
        V = np.diag(self._v_c[g])
        for S, lvl, Sigma in zip(cluster.same_group, cluster.level_ids, sigmas):
            V = V + S * Sigma[np.ix_(lvl, lvl)]
        return V

    def marginal_covariance(self, theta: NDArray, cluster: int) -> NDArray:
        """V_g(θ) for one cluster."""
        theta = self._check_theta(theta)
        return self._cluster_covariance(cluster, self._sigmas(theta))

    def _dV(self, g: int, jacobians: list[NDArray]) -> list[NDArray]:
        """∂V_g/∂θ_j for every j, in θ order."""
        cluster = self.clusters[g]
        out = []
        for S, lvl, jac in zip(cluster.same_group, cluster.level_ids, jacobians):
            for dSigma in jac:
                out.append(S * dSigma[np.ix_(lvl, lvl)])
        return out

    # ------------------------------------------------------------------
    # Per-cluster passes
    # ------------------------------------------------------------------

    def _factor_cluster(
        self, g: int, sigmas: list[NDArray], theta: NDArray,
    ) -> _ClusterFactor:
        V = self._cluster_covariance(g, sigmas)
        m = V.shape[0]
        if not np.all(np.isfinite(V)):
            raise SingularCovarianceError(
                f"Marginal covariance of cluster {g} (size {m}) has "
                f"non-finite entries at theta={theta}",
                theta=theta, cluster=g, size=m,
            )
        try:
            L = np.linalg.cholesky(V)
        except np.linalg.LinAlgError:
            raise SingularCovarianceError(
                f"Marginal covariance of cluster {g} (size {m}) is not "
                f"positive definite at theta={theta}",
                theta=theta, cluster=g, size=m,
            ) from None

        X_g = self._X_c[g]
        y_g = self._y_c[g]
        A = sla.cho_solve((L, True), X_g)
        b = sla.cho_solve((L, True), y_g)
        return _ClusterFactor(
            chol=L,
            A=A,
            b=b,
            logdet=2.0 * float(np.sum(np.log(np.diag(L)))),
            XtViX=X_g.T @ A,
            XtViy=X_g.T @ b,
            ytViy=float(y_g @ b),
        )

    def _derivative_cluster(
        self,
        g: int,
        factor: _ClusterFactor,
        jacobians: list[NDArray],
        beta: NDArray,
        M_inv: NDArray,
        want_information: bool,
    ) -> tuple[NDArray, NDArray | None, NDArray | None, NDArray | None]:
        """Gradient and information contributions of one cluster."""
        dVs = self._dV(g, jacobians)
        q = len(dVs)
        m = factor.chol.shape[0]
        V_inv = sla.cho_solve((factor.chol, True), np.eye(m))
        r_tilde = factor.b - factor.A @ beta

        grad = np.empty(q, dtype=np.float64)
        for j, D in enumerate(dVs):
            term = np.sum(V_inv * D) - float(r_tilde @ D @ r_tilde)
            if self.reml:
                term -= np.sum(M_inv * (factor.A.T @ D @ factor.A))
            grad[j] = -0.5 * term

        if not want_information:
            return grad, None, None, None

        VinvD = [V_inv @ D for D in dVs]
        T1 = np.empty((q, q), dtype=np.float64)
        for j in range(q):
            for k in range(j, q):
                T1[j, k] = T1[k, j] = np.sum(VinvD[j] * VinvD[k].T)

        if not self.reml:
            return grad, T1, None, None

        AtD = [factor.A.T @ D for D in dVs]
        B = np.stack([AtD_j @ factor.A for AtD_j in AtD])
        T2 = np.empty((q, q), dtype=np.float64)
        for j in range(q):
            for k in range(j, q):
                C = AtD[j] @ VinvD[k] @ factor.A
                T2[j, k] = T2[k, j] = np.sum(M_inv * C)
        return grad, T1, T2, B

    def _map(self, fn, items):
        if self.n_jobs == 1 or len(items) < 2:
            return [fn(*it) for it in items]
        return Parallel(n_jobs=self.n_jobs, prefer="threads")(
            delayed(fn)(*it) for it in items
        )

    # ------------------------------------------------------------------
    # Public evaluation
    # ------------------------------------------------------------------

    def _check_theta(self, theta: NDArray) -> NDArray:
        theta = np.asarray(theta, dtype=np.float64).ravel()
        if theta.shape[0] != self.n_theta:
            raise ValueError(
                f"theta has {theta.shape[0]} elements, expected {self.n_theta}"
            )
        return theta

    def evaluate(
        self,
        theta: NDArray,
        *,
        gradient: bool = False,
        information: bool = False,
    ) -> LikelihoodEval:
        """Evaluate the profiled log-likelihood at θ.

        Args:
            theta: Variance-component parameters.
            gradient: Also compute ∂ℓ/∂θ analytically.
            information: Also compute the expected information matrix.

        Returns:
            LikelihoodEval.

        Raises:
            SingularCovarianceError: If any V_g, or XᵀV⁻¹X, is not
                positive definite at θ.
        """
        theta = self._check_theta(theta)
        sigmas = self._sigmas(theta)

        factors = self._map(
            self._factor_cluster,
            [(g, sigmas, theta) for g in range(len(self.clusters))],
        )

        M = sum(f.XtViX for f in factors)
        XtViy = sum(f.XtViy for f in factors)
        ytViy = sum(f.ytViy for f in factors)
        logdet_V = sum(f.logdet for f in factors)

        try:
            M_chol = np.linalg.cholesky(M)
        except np.linalg.LinAlgError:
            raise SingularCovarianceError(
                f"X'V^-1X ({self.p}x{self.p}) is not positive definite at "
                f"theta={theta}",
                theta=theta, cluster=None, size=self.p,
            ) from None
        beta = sla.cho_solve((M_chol, True), XtViy)
        M_inv = sla.cho_solve((M_chol, True), np.eye(self.p))
        rss = max(float(ytViy - beta @ XtViy), 0.0)

        if self.reml:
            logdet_M = 2.0 * float(np.sum(np.log(np.diag(M_chol))))
            ll = -0.5 * ((self.n - self.p) * _LOG_2PI + logdet_V + logdet_M + rss)
        else:
            ll = -0.5 * (self.n * _LOG_2PI + logdet_V + rss)

        grad = None
        info = None
        if (gradient or information) and self.n_theta > 0:
            jacobians = self._jacobians(theta)
            parts = self._map(
                self._derivative_cluster,
                [(g, factors[g], jacobians, beta, M_inv, information)
                 for g in range(len(self.clusters))],
            )
            grad = sum(part[0] for part in parts)
            if information:
                T1 = sum(part[1] for part in parts)
                if self.reml:
                    T2 = sum(part[2] for part in parts)
                    B = sum(part[3] for part in parts)
                    MB = [M_inv @ Bj for Bj in B]
                    T3 = np.array([[np.sum(MB[j] * MB[k].T) for k in range(self.n_theta)]
                                   for j in range(self.n_theta)])
                    info = 0.5 * (T1 - 2.0 * T2 + T3)
                else:
                    info = 0.5 * T1
        elif gradient or information:
            grad = np.zeros(0)
            info = np.zeros((0, 0)) if information else None

        return LikelihoodEval(
            theta=theta,
            loglik=float(ll),
            beta=beta,
            vcov=M_inv,
            gradient=grad if gradient else None,
            information=info,
            rss=rss,
        )

    def loglik(self, theta: NDArray) -> float:
        """ℓ(θ) only."""
        return self.evaluate(theta).loglik

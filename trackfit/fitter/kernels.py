from __future__ import annotations

import numpy as np
from numba import njit

__all__ = [
    "robust_cholesky",
    "chi2",
    "kalman_gain",
]


def robust_cholesky(S: np.ndarray) -> np.ndarray:
    r"""
    Lower Cholesky factor of a symmetric ``(m, m)`` matrix that may be
    slightly indefinite.

    Adds :math:`\varepsilon I` with :math:`\varepsilon = 10^{-12}, 10^{-11}, \ldots`
    (eight tries) and, failing that, clips the eigenvalues at
    :math:`10^{-15}\,w_\max` before factorizing.

    Raises ``numpy.linalg.LinAlgError`` when no eigenvalue is positive.
    """
    S = np.ascontiguousarray(S, dtype=np.float64)
    try:
        return np.linalg.cholesky(S)
    except np.linalg.LinAlgError:
        I = np.eye(S.shape[0], dtype=S.dtype)
        eps = 1e-12
        for _ in range(8):
            try:
                return np.linalg.cholesky(S + eps * I)
            except np.linalg.LinAlgError:
                eps *= 10.0
        w, V = np.linalg.eigh(S)
        if w.max() <= 0.0:
            raise
        w = np.clip(w, w.max() * 1e-15, None)
        return np.linalg.cholesky((V * w) @ V.T)


@njit(cache=True)
def _forward_sub(L: np.ndarray, b: np.ndarray) -> np.ndarray:
    m = L.shape[0]
    u = np.empty(m, dtype=np.float64)
    for i in range(m):
        acc = b[i]
        for j in range(i):
            acc -= L[i, j] * u[j]
        u[i] = acc / L[i, i]
    return u


@njit(cache=True)
def _back_sub(L: np.ndarray, u: np.ndarray) -> np.ndarray:
    # solves L^T x = u
    m = L.shape[0]
    x = np.empty(m, dtype=np.float64)
    for i in range(m - 1, -1, -1):
        acc = u[i]
        for j in range(i + 1, m):
            acc -= L[j, i] * x[j]
        x[i] = acc / L[i, i]
    return x


@njit(cache=True)
def _chi2_factored(r: np.ndarray, L: np.ndarray) -> float:
    u = _forward_sub(L, r)
    acc = 0.0
    for i in range(u.shape[0]):
        acc += u[i] * u[i]
    return acc


@njit(cache=True)
def _gain_factored(PHt: np.ndarray, L: np.ndarray) -> np.ndarray:
    n, m = PHt.shape
    K = np.empty((n, m), dtype=np.float64)
    for row in range(n):
        K[row, :] = _back_sub(L, _forward_sub(L, PHt[row, :].copy()))
    return K


def chi2(residual: np.ndarray, S: np.ndarray) -> float:
    r"""
    Mahalanobis :math:`\chi^2 = r^\top S^{-1} r = \|L^{-1} r\|_2^2` with :math:`S = L L^\top`.

    One forward substitution on the robust Cholesky factor; :math:`S^{-1}`
    is never formed.
    """
    L = robust_cholesky(S)
    return _chi2_factored(np.ascontiguousarray(residual, dtype=np.float64), L)


def kalman_gain(P_pred: np.ndarray, H: np.ndarray, S: np.ndarray) -> np.ndarray:
    r"""
    Kalman gain :math:`K = P^- H^\top S^{-1}` via Cholesky solves.

    Each row :math:`b` of :math:`P^- H^\top` is solved from
    :math:`L(L^\top x) = b` by forward then back substitution.

    Parameters
    ----------
    P_pred : ndarray, shape (n, n)
        Predicted covariance :math:`P^-`.
    H : ndarray, shape (m, n)
        Projection matrix.
    S : ndarray, shape (m, m)
        Innovation covariance :math:`S = H P^- H^\top + R`.

    Returns
    -------
    K : ndarray, shape (n, m)
    """
    L = robust_cholesky(S)
    PHt = np.ascontiguousarray(np.asarray(P_pred, dtype=np.float64) @ np.asarray(H, dtype=np.float64).T)
    return _gain_factored(PHt, L)

"""
Triangulated spatial mesh, finite element matrices and projection matrices.

The mesh covers the training stations with an inner region of fine
triangles (extended ``offset[0]`` beyond the convex hull of the stations)
and an outer band of coarser triangles (a further ``offset[1]``) that keeps
boundary effects of the SPDE field away from the data.

References
----------
.. [1] Lindgren, F., Rue, H., & Lindström, J. (2011). An explicit link between
       Gaussian fields and Gaussian Markov random fields: the stochastic partial
       differential equation approach. JRSS B, 73(4), 423-498.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import sparse
from scipy.spatial import ConvexHull, Delaunay, QhullError, cKDTree

from ozone_spde.exceptions import InsufficientSpatialSupportError

logger = logging.getLogger(__name__)

# Barycentric tolerance when locating points in triangles
_LOCATE_TOL = 1e-9


@dataclass
class Mesh:
    """Triangulated discretisation of the spatial domain.

    Attributes
    ----------
    vertices : NDArray
        Vertex coordinates, shape (n_vertices, 2)
    triangles : NDArray
        Vertex indices of each triangle, shape (n_triangles, 3)
    n_data_vertices : int
        Number of leading vertices placed at (merged) data locations
    """
    vertices: NDArray
    triangles: NDArray
    n_data_vertices: int = 0

    @property
    def n_vertices(self) -> int:
        return self.vertices.shape[0]

    @property
    def n_triangles(self) -> int:
        return self.triangles.shape[0]

    def triangle_areas(self) -> NDArray:
        p0, p1, p2 = (self.vertices[self.triangles[:, k]] for k in range(3))
        return 0.5 * np.abs(_cross(p1 - p0, p2 - p0))

    def fem_matrices(self) -> Tuple[sparse.csr_matrix, sparse.csr_matrix]:
        """Lumped mass matrix C and stiffness matrix G of P1 elements.

        Returns
        -------
        C : csr_matrix
            Diagonal matrix with one third of the area of every triangle
            touching each vertex
        G : csr_matrix
            Stiffness matrix, entries grad(phi_i) . grad(phi_j) integrated
            over the domain
        """
        tri = self.triangles
        p0, p1, p2 = (self.vertices[tri[:, k]] for k in range(3))
        area = 0.5 * np.abs(_cross(p1 - p0, p2 - p0))

        # Edge opposite each local vertex
        edges = np.stack([p2 - p1, p0 - p2, p1 - p0], axis=1)
        local = np.einsum("tik,tjk->tij", edges, edges) / (4.0 * area[:, None, None])

        rows = np.repeat(tri, 3, axis=1).ravel()
        cols = np.tile(tri, (1, 3)).ravel()
        G = sparse.coo_matrix(
            (local.ravel(), (rows, cols)), shape=(self.n_vertices, self.n_vertices)
        ).tocsr()

        mass = np.bincount(tri.ravel(), weights=np.repeat(area / 3.0, 3),
                           minlength=self.n_vertices)
        C = sparse.diags(mass, format="csr")
        return C, G

    def locate(self, coords: NDArray, chunk_size: int = 256) -> Tuple[NDArray, NDArray]:
        """Find the containing triangle and barycentric weights of points.

        Points are tested against all triangles at once, ``chunk_size``
        points at a time.

        Returns
        -------
        simplex : NDArray
            Triangle index per point, -1 when the point is outside the mesh
        weights : NDArray
            Barycentric weights, shape (n_points, 3); zero outside the mesh
        """
        coords = np.atleast_2d(np.asarray(coords, dtype=float))
        p0 = self.vertices[self.triangles[:, 0]]
        basis = np.stack([
            self.vertices[self.triangles[:, 1]] - p0,
            self.vertices[self.triangles[:, 2]] - p0,
        ], axis=2)
        inverse = np.linalg.inv(basis)

        simplex = np.full(len(coords), -1, dtype=int)
        weights = np.zeros((len(coords), 3))
        for start in range(0, len(coords), chunk_size):
            block = coords[start:start + chunk_size]
            lam = np.einsum("tij,ptj->pti", inverse, block[:, None, :] - p0[None, :, :])
            bary = np.concatenate([1.0 - lam.sum(axis=2, keepdims=True), lam], axis=2)
            inside = np.all(bary >= -_LOCATE_TOL, axis=2)
            found = np.flatnonzero(inside.any(axis=1))
            # First containing triangle wins on shared edges
            tri = np.argmax(inside[found], axis=1)
            w = np.clip(bary[found, tri], 0.0, None)
            simplex[start + found] = tri
            weights[start + found] = w / w.sum(axis=1, keepdims=True)
        return simplex, weights



def _cross(a: NDArray, b: NDArray) -> NDArray:
    return a[..., 0] * b[..., 1] - a[..., 1] * b[..., 0]


def _merge_points(points: NDArray, cutoff: float) -> NDArray:
    """Greedy merge: keep a point only if it is farther than ``cutoff`` from all kept points."""
    kept = []
    for point in points:
        if not kept or np.min(np.hypot(*(np.asarray(kept) - point).T)) > cutoff:
            kept.append(point)
    return np.asarray(kept)


def check_spatial_support(points: NDArray, tol: float = 1e-10) -> None:
    """Raise InsufficientSpatialSupportError unless points span a 2-D region.

    Parameters
    ----------
    points : NDArray
        Distinct coordinates, shape (n, 2)
    tol : float
        Relative area tolerance for the collinearity check
    """
    points = np.asarray(points, dtype=float)
    if len(points) < 3:
        raise InsufficientSpatialSupportError(
            f"At least 3 distinct locations are needed for a mesh, got {len(points)}"
        )
    centred = points - points.mean(axis=0)
    scale = max(np.abs(centred).max(), 1.0)
    singular = np.linalg.svd(centred / scale, compute_uv=False)
    if singular[-1] <= tol * singular[0]:
        raise InsufficientSpatialSupportError("All locations are collinear")


def _buffered_hull(points: NDArray, distance: float, n_arc: int = 32) -> NDArray:
    """Convex polygon (counter-clockwise) at ``distance`` around the points."""
    angles = np.linspace(0.0, 2.0 * np.pi, n_arc, endpoint=False)
    circle = distance * np.column_stack([np.cos(angles), np.sin(angles)])
    ring = (points[:, None, :] + circle[None, :, :]).reshape(-1, 2)
    hull = ConvexHull(ring)
    return ring[hull.vertices]


def _resample_polygon(polygon: NDArray, spacing: float) -> NDArray:
    """Corners of a closed polygon plus evenly spaced points along each edge.

    Keeping every corner leaves the convex hull of the result equal to the
    polygon itself.
    """
    edge = np.roll(polygon, -1, axis=0) - polygon
    n_split = np.maximum(np.ceil(np.hypot(*edge.T) / spacing).astype(int), 1)
    pieces = [p + np.outer(np.arange(k) / k, e) for p, e, k in zip(polygon, edge, n_split)]
    return np.vstack(pieces)



def _inside_convex(polygon: NDArray, points: NDArray) -> NDArray:
    """Mask of points inside a counter-clockwise convex polygon."""
    start = polygon
    edge = np.roll(polygon, -1, axis=0) - polygon
    rel = points[:, None, :] - start[None, :, :]
    return np.all(_cross(edge[None, :, :], rel) >= 0.0, axis=1)


def _triangular_lattice(polygon: NDArray, spacing: float) -> NDArray:
    """Equilateral lattice with side ``spacing`` covering the polygon's bounding box."""
    lo, hi = polygon.min(axis=0), polygon.max(axis=0)
    dy = spacing * np.sqrt(3.0) / 2.0
    rows = np.arange(lo[1], hi[1] + dy, dy)
    points = []
    for k, y in enumerate(rows):
        shift = 0.5 * spacing if k % 2 else 0.0
        xs = np.arange(lo[0] - shift, hi[0] + spacing, spacing)
        points.append(np.column_stack([xs, np.full_like(xs, y)]))
    return np.vstack(points)


def _add_separated(accepted: NDArray, candidates: NDArray, min_dist: float) -> NDArray:
    if len(candidates) == 0:
        return accepted
    dist, _ = cKDTree(accepted).query(candidates)
    return np.vstack([accepted, candidates[dist > min_dist]])


def build_mesh(
    coords: NDArray,
    max_edge: Sequence[float] = (0.5, 1.0),
    cutoff: float = 0.1,
    offset: Sequence[float] = (0.5, 1.0),
) -> Mesh:
    """Triangulate the region around a set of locations.

    Parameters
    ----------
    coords : NDArray
        Data locations, shape (n, 2). Repeated locations are allowed.
    max_edge : (float, float)
        Target triangle edge length in the inner region and in the outer band
    cutoff : float
        Locations closer than this are merged into one vertex
    offset : (float, float)
        Inner extension beyond the convex hull and outer band width

    Returns
    -------
    Mesh
        Triangulated mesh; the first ``n_data_vertices`` vertices are the
        merged data locations

    Raises
    ------
    InsufficientSpatialSupportError
        If fewer than 3 distinct, non-collinear locations remain
    """
    coords = np.asarray(coords, dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 2:
        raise ValueError(f"coords must have shape (n, 2), got {coords.shape}")
    if not np.all(np.isfinite(coords)):
        raise InsufficientSpatialSupportError("Coordinates contain missing or infinite values")

    if len(coords) == 0:
        raise InsufficientSpatialSupportError("No locations to build a mesh from")
    # First-appearance order decides which point survives a merge
    _, first = np.unique(coords, axis=0, return_index=True)
    distinct = coords[np.sort(first)]
    points = _merge_points(distinct, cutoff)
    check_spatial_support(points)

    inner_edge, outer_edge = float(max_edge[0]), float(max_edge[1])
    try:
        hull_points = points[ConvexHull(points).vertices]
        inner = _buffered_hull(hull_points, float(offset[0]))
        outer = _buffered_hull(hull_points, float(offset[0]) + float(offset[1]))
    except QhullError as e:
        raise InsufficientSpatialSupportError(f"Convex hull failed: {e}") from e

    # The outer ring is kept whole so the mesh spans the full offset region
    vertices = np.vstack([points, _resample_polygon(outer, outer_edge)])
    vertices = _add_separated(vertices, _resample_polygon(inner, inner_edge), 0.5 * inner_edge)

    fine = _triangular_lattice(inner, inner_edge)
    fine = fine[_inside_convex(inner, fine)]
    vertices = _add_separated(vertices, fine, 0.5 * inner_edge)

    coarse = _triangular_lattice(outer, outer_edge)
    coarse = coarse[_inside_convex(outer, coarse) & ~_inside_convex(inner, coarse)]
    vertices = _add_separated(vertices, coarse, 0.5 * outer_edge)

    try:
        delaunay = Delaunay(vertices)
    except QhullError as e:
        raise InsufficientSpatialSupportError(f"Triangulation failed: {e}") from e

    simplices = delaunay.simplices
    p0, p1, p2 = (vertices[simplices[:, k]] for k in range(3))
    area = 0.5 * np.abs(_cross(p1 - p0, p2 - p0))
    simplices = simplices[area > 1e-12 * inner_edge ** 2]

    # Drop vertices that ended up in no triangle and re-index
    used = np.unique(simplices)
    remap = np.full(len(vertices), -1, dtype=int)
    remap[used] = np.arange(len(used))
    n_data = int(np.sum(remap[: len(points)] >= 0))

    mesh = Mesh(vertices=vertices[used], triangles=remap[simplices], n_data_vertices=n_data)
    logger.info(
        f"Built mesh with {mesh.n_vertices} vertices and {mesh.n_triangles} triangles "
        f"from {len(points)} locations"
    )
    return mesh


def projection_matrix(
    mesh: Mesh,
    coords: NDArray,
    group: Optional[NDArray] = None,
    n_groups: int = 1,
) -> sparse.csr_matrix:
    """Sparse map from (vertex, group) basis functions to point values.

    Parameters
    ----------
    mesh : Mesh
        Spatial mesh
    coords : NDArray
        Point coordinates, shape (n_points, 2)
    group : NDArray, optional
        1-based time group of each point; all points in group 1 if omitted
    n_groups : int
        Number of time groups (columns = n_vertices * n_groups)

    Returns
    -------
    csr_matrix
        Shape (n_points, n_vertices * n_groups). Rows of points outside the
        mesh are all zero.
    """
    coords = np.atleast_2d(np.asarray(coords, dtype=float))
    n_points = len(coords)
    if group is None:
        group = np.ones(n_points, dtype=int)
    group = np.asarray(group, dtype=int)
    if len(group) != n_points:
        raise ValueError("group must have one entry per point")
    if n_points and (group.min() < 1 or group.max() > n_groups):
        raise ValueError(f"group values must lie in 1..{n_groups}")

    # Points repeat across time; locate each distinct location once
    unique, inverse = np.unique(coords, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).ravel()
    simplex, weights = mesh.locate(unique)
    outside = simplex < 0
    if outside.any():
        logger.warning(
            f"{int(outside.sum())} of {len(unique)} locations fall outside the mesh; "
            "their projection rows are zero"
        )

    point_simplex = simplex[inverse]
    point_weights = weights[inverse]
    vertex_ids = mesh.triangles[np.where(point_simplex >= 0, point_simplex, 0)]
    columns = vertex_ids + mesh.n_vertices * (group[:, None] - 1)

    rows = np.repeat(np.arange(n_points), 3)
    A = sparse.coo_matrix(
        (point_weights.ravel(), (rows, columns.ravel())),
        shape=(n_points, mesh.n_vertices * n_groups),
    ).tocsr()
    A.eliminate_zeros()
    return A

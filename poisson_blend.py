# Poisson Blending - Seamless compositing of a masked source region into a target image.

# Mechanism: every mask pixel becomes an unknown of the discrete Poisson equation (Pérez et al. 2003, equation 7).
# Inside the region the solution keeps the source gradients (Δf = Δg); on the region border it is pinned to the target pixels (f|∂Ω = f*|∂Ω).
# The coefficient matrix is the same for R, G and B, so it is factorized once and reused for the three channel solves.

import numpy as np
import scipy.sparse as sparse
from scipy.sparse.linalg import splu
from typing import NamedTuple, Tuple

DEFAULT_GAMMA = 2.2  # Gamma used to decode/encode 8-bit channels
MASK_THRESHOLD = 0.99  # Red channel value at which a mask pixel is inside the blend region

# Up, right, down, left as (dy, dx)
NEIGHBOR_OFFSETS = ((-1, 0), (0, 1), (1, 0), (0, -1))


class PlacementError(ValueError):
    pass


class SolverError(RuntimeError):
    pass


# Dense numbering of the mask pixels.
# ids: (h, w) int array, unknown id per mask pixel or -1 outside the region
# coords: (n, 2) int array, (y, x) mask coordinate of every unknown, ordered by id
# count: number of unknowns n
class UnknownIndex(NamedTuple):
    ids: np.ndarray
    coords: np.ndarray
    count: int


# GAMMA CODEC

# Converts 8-bit channel values to floats in [0, 1]: (raw / 255) ^ (1 / gamma).
def gamma_decode(raw: np.ndarray, gamma: float = DEFAULT_GAMMA) -> np.ndarray:
    values = np.asarray(raw, dtype=np.float32) / 255.0
    return np.power(values, 1.0 / gamma).astype(np.float32)


# Converts floats back to 8-bit channel values: round(clamp(v) ^ gamma * 255).
def gamma_encode(values: np.ndarray, gamma: float = DEFAULT_GAMMA) -> np.ndarray:
    clamped = np.clip(np.asarray(values, dtype=np.float64), 0.0, 1.0)
    return np.rint(np.power(clamped, gamma) * 255.0).astype(np.uint8)


# MASK CLASSIFICATION

# Red channel of a mask image. Single channel masks are used as is.
def _mask_red(mask: np.ndarray) -> np.ndarray:
    return mask if mask.ndim == 2 else mask[:, :, 0]


# Checks whether mask-local pixel (x, y) belongs to the blend region.
# Neighbor probes may land one step outside the mask; those are never part of the region and the mask array is not read.
def is_mask_pixel(mask: np.ndarray, x: int, y: int) -> bool:
    h, w = mask.shape[:2]
    if x < 0 or y < 0 or x >= w or y >= h:
        return False
    return bool(_mask_red(mask)[y, x] >= MASK_THRESHOLD)


# Boolean (h, w) map of the blend region, vectorised form of is_mask_pixel.
# Together with the -1 padding in neighbor_ids it answers every neighbor probe, including those one step outside the mask.
def mask_region(mask: np.ndarray) -> np.ndarray:
    return _mask_red(mask) >= MASK_THRESHOLD


# UNKNOWN INDEXING

# Assigns ids 0..n-1 to the region pixels in row-major order (y outer, x inner).
# The same index must be used to build the system and to write the solution back, otherwise rows and pixels go out of step silently.
def build_unknown_index(mask: np.ndarray) -> UnknownIndex:
    region = mask_region(mask)

    # np.nonzero walks a C-ordered array row by row, which is exactly the id order
    ys, xs = np.nonzero(region)
    count = len(ys)

    ids = np.full(region.shape, -1, dtype=np.int64)
    ids[ys, xs] = np.arange(count)

    coords = np.stack([ys, xs], axis=1).astype(np.int64)
    coords.setflags(write=False)
    ids.setflags(write=False)

    return UnknownIndex(ids=ids, coords=coords, count=count)


# Ids of the 4 neighbors of every unknown, shape (n, 4) in NEIGHBOR_OFFSETS order.
# -1 marks a neighbor outside the region (a Dirichlet boundary pixel).
def neighbor_ids(index: UnknownIndex) -> np.ndarray:
    padded = np.pad(index.ids, 1, mode="constant", constant_values=-1)
    ys = index.coords[:, 0] + 1
    xs = index.coords[:, 1] + 1

    return np.stack(
        [padded[ys + dy, xs + dx] for dy, dx in NEIGHBOR_OFFSETS],
        axis=1
    )


# PLACEMENT VALIDATION

# Checks that the mask placed at (mx, my) keeps a 1-pixel margin inside the target.
# Every unknown then has 4 neighbors inside the target, so boundary lookups never leave the image.
def validate_placement(
    mx: int,
    my: int,
    mask_w: int,
    mask_h: int,
    target_w: int,
    target_h: int
) -> None:
    xmax = mx + mask_w
    ymax = my + mask_h

    if mx > 0 and my > 0 and xmax < target_w - 1 and ymax < target_h - 1:
        return

    raise PlacementError(
        f"The specified source image (min = ({mx}, {my}), max = ({xmax}, {ymax})) "
        f"does not fit in target image (min = (1, 1), max = ({target_w - 1}, {target_h - 1}))"
    )


# SYSTEM ASSEMBLY

# Builds the coefficient matrix M (left-hand side of equation 7).
# Row id(p): 4 on the diagonal (|N_p| = 4 since p is never on the target border), -1 at id(q) for every neighbor q inside the region.
# Neighbors outside the region get no entry; their known values go to the right-hand side instead.
def assemble_matrix(index: UnknownIndex) -> sparse.csc_matrix:
    n = index.count
    rows = np.arange(n)
    neighbors = neighbor_ids(index)

    # Triplet lists, diagonal first
    row_parts = [rows]
    col_parts = [rows]
    val_parts = [np.full(n, 4.0)]

    for k in range(len(NEIGHBOR_OFFSETS)):
        q = neighbors[:, k]
        inside = q >= 0
        row_parts.append(rows[inside])
        col_parts.append(q[inside])
        val_parts.append(np.full(int(np.count_nonzero(inside)), -1.0))

    mat_M = sparse.coo_matrix(
        (np.concatenate(val_parts), (np.concatenate(row_parts), np.concatenate(col_parts))),
        shape=(n, n)
    )
    return mat_M.tocsc()


# Builds the right-hand sides of equation 7, one column per color channel, shape (n, 3).
# b[id(p)] = sum over q of (g_p - g_q) + sum over boundary neighbors q of f*_q
# g is the source (mask-local coordinates), f* the target (shifted by the placement offset).
# Only the source gradient is used as guidance field; gradient mixing (equation 13) is not supported.
def assemble_rhs(
    index: UnknownIndex,
    source: np.ndarray,
    target: np.ndarray,
    mx: int,
    my: int
) -> np.ndarray:
    h, w = index.ids.shape

    # Source neighbors past the source border read as 0
    source_pad = np.pad(
        source[:, :, :3].astype(np.float64),
        ((1, 1), (1, 1), (0, 0)),
        mode="constant",
        constant_values=0.0
    )
    # Target window covering the mask footprint plus the 1-pixel boundary ring
    target_win = target[my - 1:my + h + 1, mx - 1:mx + w + 1, :3].astype(np.float64)

    ys = index.coords[:, 0] + 1
    xs = index.coords[:, 1] + 1
    center = source_pad[ys, xs]
    neighbors = neighbor_ids(index)

    vec_b = np.zeros((index.count, 3), dtype=np.float64)
    for k, (dy, dx) in enumerate(NEIGHBOR_OFFSETS):
        # Guidance term v_pq = g_p - g_q
        vec_b += center - source_pad[ys + dy, xs + dx]

        # Dirichlet term f*_q for neighbors outside the region
        boundary = neighbors[:, k] < 0
        vec_b[boundary] += target_win[ys[boundary] + dy, xs[boundary] + dx]

    return vec_b


# LINEAR SOLVE

# Factorizes M once and solves M x = b for every channel column of rhs.
# M is symmetric positive-definite: symmetric ordering, no pivoting, and every pivot must come out strictly positive.
def solve_channels(mat_M: sparse.spmatrix, rhs: np.ndarray) -> np.ndarray:
    try:
        factor = splu(
            sparse.csc_matrix(mat_M),
            permc_spec="MMD_AT_PLUS_A",
            diag_pivot_thresh=0.0,
            options=dict(SymmetricMode=True)
        )
    except RuntimeError as e:
        raise SolverError(f"factorization failed: {e}") from e

    if np.any(factor.U.diagonal() <= 0):
        raise SolverError("matrix is not positive-definite")

    solution = np.empty_like(rhs, dtype=np.float64)
    for c in range(rhs.shape[1]):
        solution[:, c] = factor.solve(rhs[:, c])

    if not np.all(np.isfinite(solution)):
        raise SolverError("solve produced non-finite values")

    return solution


# COMPOSITING

# Writes the solved pixels into a gamma-encoded copy of the target.
# Returns interleaved RGBA8, shape (H, W, 4); alpha is always 255.
def composite(
    target: np.ndarray,
    index: UnknownIndex,
    solution: np.ndarray,
    mx: int,
    my: int,
    gamma: float = DEFAULT_GAMMA
) -> np.ndarray:
    H, W = target.shape[:2]

    out = np.empty((H, W, 4), dtype=np.uint8)
    out[:, :, :3] = gamma_encode(target[:, :, :3], gamma)
    out[:, :, 3] = 255

    if index.count > 0:
        ys = index.coords[:, 0] + my
        xs = index.coords[:, 1] + mx
        # Solver runs in double precision, pixels are stored in single precision
        out[ys, xs, :3] = gamma_encode(solution.astype(np.float32), gamma)

    return out


# All in one function

# Performs Poisson blending of the masked source region into the target at offset (mx, my).
# mask: (h, w, 3) image (or (h, w)), red channel >= 0.99 marks the region
# source: (>= h, >= w, 3) image, linear values in [0, 1]
# target: (H, W, 3) image, linear values in [0, 1]
# Returns (ok, rgba). ok is False with an empty buffer when the placement is rejected or the solve fails.
def poisson_blend(
    mask: np.ndarray,
    source: np.ndarray,
    target: np.ndarray,
    mx: int,
    my: int,
    gamma: float = DEFAULT_GAMMA
) -> Tuple[bool, np.ndarray]:
    if mask.ndim not in (2, 3):
        raise ValueError("Mask must have shape (H, W) or (H, W, 3)")
    if source.ndim != 3 or source.shape[2] < 3:
        raise ValueError("Source image must have shape (H, W, 3)")
    if target.ndim != 3 or target.shape[2] < 3:
        raise ValueError("Target image must have shape (H, W, 3)")

    mask_h, mask_w = mask.shape[:2]
    if source.shape[0] < mask_h or source.shape[1] < mask_w:
        raise ValueError("Source image must be at least as large as the mask")

    # Offsets may arrive as numpy unsigned scalars, which would turn index arithmetic into floats
    mx, my = int(mx), int(my)

    empty = np.zeros(0, dtype=np.uint8)
    target_h, target_w = target.shape[:2]

    try:
        validate_placement(mx, my, mask_w, mask_h, target_w, target_h)
    except PlacementError as e:
        print(e)
        return False, empty

    index = build_unknown_index(mask)

    # Nothing to solve, the output is the re-encoded target
    if index.count == 0:
        return True, composite(target, index, np.zeros((0, 3)), mx, my, gamma)

    mat_M = assemble_matrix(index)
    vec_b = assemble_rhs(index, source, target, mx, my)

    try:
        solution = solve_channels(mat_M, vec_b)
    except SolverError as e:
        print(f"Poisson solve failed: {e}")
        return False, empty

    return True, composite(target, index, solution, mx, my, gamma)

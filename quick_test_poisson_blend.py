#!/usr/bin/env python3
# Quick test for Poisson blending on a synthetic scene

import numpy as np
import cv2
import time

from poisson_blend import gamma_decode, gamma_encode, poisson_blend
from image_io import save_image

TARGET_SIZE = (240, 320)  # (H, W)
PATCH_SIZE = (96, 128)  # (h, w)
OFFSET = (100, 70)  # (mx, my)


# Builds a smooth blue-to-orange target background with a little noise
def make_target(rng):
    H, W = TARGET_SIZE
    ramp = np.linspace(0.0, 1.0, W, dtype=np.float32)[np.newaxis, :].repeat(H, axis=0)
    img = np.stack([0.2 + 0.7 * ramp, 0.4 + 0.2 * ramp, 0.9 - 0.7 * ramp], axis=2)
    img += rng.normal(0.0, 0.02, img.shape).astype(np.float32)
    return (np.clip(img, 0, 1) * 255).astype(np.uint8)


# Builds a textured source patch: checkerboard on a dark green base
def make_source():
    h, w = PATCH_SIZE
    yy, xx = np.mgrid[0:h, 0:w]
    checker = (((yy // 8) + (xx // 8)) % 2).astype(np.float32)
    img = np.stack([0.1 + 0.3 * checker, 0.5 + 0.2 * checker, 0.1 + 0.1 * checker], axis=2)
    return (img * 255).astype(np.uint8)


# Builds an elliptical mask (white inside, black outside)
def make_mask():
    h, w = PATCH_SIZE
    mask = np.zeros((h, w, 3), dtype=np.uint8)
    cv2.ellipse(mask, (w // 2, h // 2), (w // 2 - 4, h // 2 - 4), 0, 0, 360, (255, 255, 255), -1)
    return mask


# Mean absolute difference across the region border, lower = less visible seam
def seam_error(rgba, region, mx, my):
    img = rgba[:, :, :3].astype(np.float32)
    h, w = region.shape
    inside = np.pad(region, 1)
    edge = inside[1:-1, 1:-1] & ~(inside[:-2, 1:-1] & inside[2:, 1:-1] & inside[1:-1, :-2] & inside[1:-1, 2:])
    ys, xs = np.nonzero(edge)
    diffs = []
    for dy, dx in ((-1, 0), (1, 0), (0, -1), (0, 1)):
        outside = ~inside[ys + 1 + dy, xs + 1 + dx]
        a = img[ys[outside] + my, xs[outside] + mx]
        b = img[ys[outside] + my + dy, xs[outside] + mx + dx]
        diffs.append(np.abs(a - b))
    return float(np.mean(np.concatenate(diffs)))


rng = np.random.default_rng(0)
target = gamma_decode(make_target(rng))
source = gamma_decode(make_source())
mask = gamma_decode(make_mask())
mx, my = OFFSET

region = mask[:, :, 0] >= 0.99
print("=" * 60)
print("Testing Poisson blending on a synthetic scene")
print("=" * 60)
print(f"Target size: {TARGET_SIZE[0]} × {TARGET_SIZE[1]}")
print(f"Mask pixels: {int(np.sum(region)):,}")

# Naive paste for comparison
naive = np.empty(TARGET_SIZE + (4,), dtype=np.uint8)
naive[:, :, :3] = gamma_encode(target)
naive[:, :, 3] = 255
ys, xs = np.nonzero(region)
naive[ys + my, xs + mx, :3] = gamma_encode(source[ys, xs])

# Runs Poisson blending
print("Running Poisson blending...")
start = time.time()
ok, result = poisson_blend(mask, source, target, mx, my)
elapsed = time.time() - start

if not ok:
    raise SystemExit("Poisson blending failed")

print(f"Time: {elapsed:.2f} seconds")
print(f"Seam error (naive paste): {seam_error(naive, region, mx, my):.2f}")
print(f"Seam error (Poisson):     {seam_error(result, region, mx, my):.2f}")

# Saves results
save_image('test_poisson_naive.png', TARGET_SIZE[1], TARGET_SIZE[0], naive)
save_image('test_poisson_result.png', TARGET_SIZE[1], TARGET_SIZE[0], result)
print("Saved: test_poisson_naive.png, test_poisson_result.png")

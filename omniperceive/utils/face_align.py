"""
Face alignment using a similarity transform (Umeyama algorithm).

Aligns detected 5-point landmarks to the ArcFace reference template so every
face attribute model (age, gender, emotion, embedding, description) receives
an upright, scale-normalized crop.

Landmark order: left_eye, right_eye, nose, left_mouth, right_mouth
"""

import cv2
import numpy as np


# Reference landmarks on a 112x112 canvas
ARCFACE_REF = np.array(
    [
        [38.2946, 51.6963],
        [73.5318, 51.5014],
        [56.0252, 71.7366],
        [41.5493, 92.3655],
        [70.7299, 92.2041],
    ],
    dtype=np.float32,
)

ARCFACE_SIZE = 112


def _umeyama(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """
    Estimate the least-squares similarity transform mapping src to dst.

    Args:
        src: [N, 2] source points (detected landmarks)
        dst: [N, 2] destination points (reference template)

    Returns:
        [2, 3] affine matrix for cv2.warpAffine
    """
    num, dim = src.shape

    src_mean = src.mean(axis=0)
    dst_mean = dst.mean(axis=0)
    src_demean = src - src_mean
    dst_demean = dst - dst_mean

    cov = dst_demean.T @ src_demean / num
    u, s, vt = np.linalg.svd(cov)

    # reflection correction
    d = np.ones(dim, dtype=np.float64)
    if np.linalg.det(cov) < 0:
        d[dim - 1] = -1

    transform = np.eye(dim + 1, dtype=np.float64)
    src_var = src_demean.var(axis=0).sum()
    scale = (s * d).sum() / src_var if src_var > 0 else 1.0

    transform[:dim, :dim] = u @ np.diag(d) @ vt
    transform[:dim, :dim] *= scale
    transform[:dim, dim] = dst_mean - transform[:dim, :dim] @ src_mean

    return transform[:2, :]


def align_face(
    img: np.ndarray,
    landmarks: np.ndarray,
    image_size: tuple[int, int] = (ARCFACE_SIZE, ARCFACE_SIZE),
) -> np.ndarray:
    """
    Align a single face using 5-point landmarks.

    Args:
        img: RGB frame, shape [H, W, 3]
        landmarks: [5, 2] landmark coordinates in pixel space
        image_size: Output (height, width)

    Returns:
        Aligned face crop, shape [height, width, 3]
    """
    height, width = image_size
    dst = ARCFACE_REF * np.array([width / ARCFACE_SIZE, height / ARCFACE_SIZE], dtype=np.float32)
    matrix = _umeyama(landmarks.astype(np.float64), dst.astype(np.float64))
    return cv2.warpAffine(img, matrix.astype(np.float32), (width, height), borderValue=0.0)

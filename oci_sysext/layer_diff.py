#!/usr/bin/env python3
"""
Layer diff calculator
Works out how many leading layers of a target image are already provided by a reference image
"""

import logging

from .errors import InvalidArgumentError

logger = logging.getLogger(__name__)

STRATEGY_DIGEST = 'digest'
STRATEGY_LENGTH = 'length'
STRATEGIES = (STRATEGY_DIGEST, STRATEGY_LENGTH)


def common_prefix_length(target, reference):
    """Number of leading layers whose digests match in both manifests"""
    count = 0
    for target_digest, reference_digest in zip(target.digests, reference.digests):
        if target_digest != reference_digest:
            break
        count += 1
    return count


def calc_skip_layers(target, reference=None, strategy=STRATEGY_DIGEST):
    """
    Compute how many leading target layers can be skipped

    Args:
        target: ImageManifest of the image being assembled
        reference: ImageManifest of the source image, or None
                   (a reference with exactly the same layers skips nothing)
        strategy: 'digest' compares digests from the start,
                  'length' subtracts the layer counts without checking content

    Returns:
        int: Skip count; not range-checked, see validate_skip_count
    """
    if strategy not in STRATEGIES:
        raise InvalidArgumentError(f"Unknown diff strategy: {strategy}")

    if reference is None or reference is target:
        return 0
    if reference.digests == target.digests:
        logger.info("Reference image has the same layers as the target, nothing to skip")
        return 0

    if strategy == STRATEGY_LENGTH:
        skip = len(target.layers) - len(reference.layers)
    else:
        skip = common_prefix_length(target, reference)
        if skip < len(reference.layers):
            logger.warning(
                f"Reference image shares only {skip} of its {len(reference.layers)} layers with the target"
            )

    logger.info(f"Calculated skip layers: {skip}")
    return skip


def validate_skip_count(skip, layer_count):
    """Raise InvalidArgumentError unless 0 <= skip <= layer_count"""
    if isinstance(skip, bool) or not isinstance(skip, int) or skip < 0 or skip > layer_count:
        raise InvalidArgumentError(
            f"Invalid number of layers to skip: {skip} (image has {layer_count} layers)"
        )
    return skip

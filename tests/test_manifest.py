#!/usr/bin/env python3
"""
Manifest reader and layer diff tests
Uses hypothesis for the skip-count properties
"""

import os
import sys
import json
import shutil
import tempfile
import unittest
from hypothesis import given, strategies as st, settings

# Add parent directory to path so the package can be imported
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from oci_sysext.errors import InvalidArgumentError, NotFoundError, ParseError
from oci_sysext.layer_diff import (
    STRATEGY_LENGTH, calc_skip_layers, common_prefix_length, validate_skip_count,
)
from oci_sysext.manifest import (
    ImageManifest, Layer, parse_manifest, read_manifest, write_manifest,
)
from oci_sysext.rootfs import RootfsAssembler

from sysext_fixtures import RecordingExtractor, make_manifest

hex_digests = st.text(alphabet='0123456789abcdef', min_size=12, max_size=12).map(lambda h: f"sha256:{h}")


class TestManifestParsing(unittest.TestCase):
    """Manifest parsing"""

    def test_parse_layers_in_order(self):
        content = json.dumps({
            'schemaVersion': 2,
            'layers': [
                {'mediaType': 'application/vnd.oci.image.layer.v1.tar+gzip', 'size': 10, 'digest': 'sha256:aaaa'},
                {'mediaType': 'application/vnd.oci.image.layer.v1.tar+gzip', 'size': 20, 'digest': 'sha256:bbbb'},
            ],
        })
        manifest = parse_manifest(content, image_dir='/images/demo')
        self.assertEqual(manifest.digests, ['sha256:aaaa', 'sha256:bbbb'])
        self.assertEqual(manifest.layers[1].size, 20)
        self.assertEqual(manifest.layer_path(manifest.layers[0]), '/images/demo/aaaa.tar.gz')

    def test_archive_name_strips_algorithm(self):
        self.assertEqual(Layer(digest='sha256:0123abcd').archive_name, '0123abcd.tar.gz')

    def test_empty_layers_allowed(self):
        manifest = parse_manifest('{"layers": []}')
        self.assertEqual(manifest.layers, [])

    def test_invalid_json(self):
        with self.assertRaises(ParseError):
            parse_manifest('{not json')

    def test_missing_layers(self):
        with self.assertRaises(ParseError):
            parse_manifest('{"schemaVersion": 2}')

    def test_non_object_document(self):
        with self.assertRaises(ParseError):
            parse_manifest('[1, 2, 3]')

    def test_invalid_digest(self):
        with self.assertRaises(ParseError):
            parse_manifest('{"layers": [{"digest": "not-a-digest", "size": 1}]}')

    def test_invalid_size(self):
        with self.assertRaises(ParseError):
            parse_manifest('{"layers": [{"digest": "sha256:ab", "size": "big"}]}')


class TestManifestFiles(unittest.TestCase):
    """Reading and writing manifest.json"""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp(prefix='test_manifest_')

    def tearDown(self):
        if os.path.exists(self.test_dir):
            shutil.rmtree(self.test_dir)

    def test_missing_manifest(self):
        with self.assertRaises(NotFoundError):
            read_manifest(self.test_dir)

    def test_write_then_read(self):
        manifest = make_manifest(['sha256:1111', 'sha256:2222'], image_dir=self.test_dir)
        write_manifest(manifest)
        loaded = read_manifest(self.test_dir)
        self.assertEqual(loaded.digests, manifest.digests)
        self.assertEqual(loaded.image_dir, self.test_dir)

    def test_malformed_file(self):
        with open(os.path.join(self.test_dir, 'manifest.json'), 'w') as f:
            f.write('{"layers": 5}')
        with self.assertRaises(ParseError):
            read_manifest(self.test_dir)


class TestLayerDiff(unittest.TestCase):
    """Skip count calculation"""

    def test_no_reference(self):
        self.assertEqual(calc_skip_layers(make_manifest(['sha256:aa', 'sha256:bb'])), 0)

    def test_same_manifest(self):
        manifest = make_manifest(['sha256:aa', 'sha256:bb'])
        self.assertEqual(calc_skip_layers(manifest, manifest), 0)

    def test_same_layers_under_another_name(self):
        digests = ['sha256:aa', 'sha256:bb']
        target = make_manifest(digests, image_dir='/images/app_1')
        reference = make_manifest(list(digests), image_dir='/images/docker.io_library_app_1')
        self.assertEqual(calc_skip_layers(target, reference), 0)
        self.assertEqual(calc_skip_layers(target, reference, strategy=STRATEGY_LENGTH), 0)

    def test_length_strategy(self):
        target = make_manifest([f"sha256:{i}{i}" for i in range(5)])
        reference = make_manifest(['sha256:ff', 'sha256:ee', 'sha256:dd'])
        self.assertEqual(calc_skip_layers(target, reference, strategy=STRATEGY_LENGTH), 2)

    def test_digest_strategy_counts_shared_prefix(self):
        target = make_manifest(['sha256:aa', 'sha256:bb', 'sha256:cc'])
        reference = make_manifest(['sha256:aa', 'sha256:bb'])
        self.assertEqual(calc_skip_layers(target, reference), 2)

    def test_digest_strategy_stops_at_first_mismatch(self):
        target = make_manifest(['sha256:aa', 'sha256:bb', 'sha256:cc'])
        reference = make_manifest(['sha256:aa', 'sha256:ff', 'sha256:cc'])
        self.assertEqual(calc_skip_layers(target, reference), 1)

    def test_unknown_strategy(self):
        with self.assertRaises(InvalidArgumentError):
            calc_skip_layers(make_manifest([]), make_manifest([]), strategy='size')

    def test_length_strategy_can_go_negative(self):
        target = make_manifest(['sha256:aa'])
        reference = make_manifest(['sha256:aa', 'sha256:bb'])
        skip = calc_skip_layers(target, reference, strategy=STRATEGY_LENGTH)
        with self.assertRaises(InvalidArgumentError):
            validate_skip_count(skip, len(target.layers))

    def test_validate_skip_count_bounds(self):
        self.assertEqual(validate_skip_count(0, 3), 0)
        self.assertEqual(validate_skip_count(3, 3), 3)
        for bad in (-1, 4, True, '1', 1.0):
            with self.assertRaises(InvalidArgumentError):
                validate_skip_count(bad, 3)

    @given(st.lists(hex_digests, max_size=8), st.lists(hex_digests, max_size=8))
    @settings(max_examples=100)
    def test_digest_prefix_is_shared(self, shared, extra):
        """
        Property: the digest strategy never skips a layer the reference does not also carry,
        and an identical reference skips nothing
        """
        target = make_manifest(shared + extra)
        reference = make_manifest(list(shared))
        skip = calc_skip_layers(target, reference)
        if not extra:
            self.assertEqual(skip, 0)
            return
        self.assertEqual(target.digests[:skip], reference.digests[:skip])
        self.assertGreaterEqual(skip, len(shared))
        self.assertEqual(skip, common_prefix_length(target, reference))

    @given(st.lists(hex_digests, min_size=0, max_size=10), st.data())
    @settings(max_examples=100)
    def test_skip_extracts_trailing_layers(self, digests, data):
        """
        Property: for any skip in [0, N] exactly the layers from index skip onwards are extracted, in order
        """
        skip = data.draw(st.integers(min_value=0, max_value=len(digests)))
        manifest = make_manifest(digests, image_dir='/images/demo')
        extractor = RecordingExtractor()
        assembler = RootfsAssembler('/nonexistent-arena', extractor=extractor)
        extracted = assembler.extract_layers(manifest, '/nonexistent-arena/tree', skip)
        self.assertEqual([layer.digest for layer in extracted], digests[skip:])
        self.assertEqual(
            [call[0] for call in extractor.calls],
            [manifest.layer_path(layer) for layer in manifest.layers[skip:]],
        )


class TestImageManifest(unittest.TestCase):

    def test_to_dict_round_trips_through_parser(self):
        manifest = ImageManifest(layers=[Layer(digest='sha256:abcd', size=7)])
        parsed = parse_manifest(json.dumps(manifest.to_dict()))
        self.assertEqual(parsed.layers, manifest.layers)


if __name__ == '__main__':
    unittest.main(verbosity=2)

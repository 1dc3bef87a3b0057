#!/usr/bin/env python3
"""Command line access to the anonymization pipeline.

Anonymizes photos and computes or compares their fingerprints without
running the API server.

Usage:
    photoguard anonymize photo.jpg -o blurred.jpg
    photoguard anonymize photo.jpg -o blurred.jpg --faces '[{"x": 10, "y": 20, "width": 80, "height": 100}]'
    photoguard hash photo.jpg
    photoguard signature photo.jpg
    photoguard compare first.jpg second.jpg --mode advisory
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from photoguard.config import Settings, configure_logging, get_settings
from photoguard.duplicates import CheckMode, DuplicateDetector
from photoguard.face_utils import FaceRegion, LazyFaceDetector, detector_factory
from photoguard.fingerprint import SignatureMetric
from photoguard.image_processor import ImageDecodingError, ImageProcessor
from photoguard.pipeline import PhotoPipeline, ProcessedPhoto


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="photoguard", description="Photo anonymization and fingerprinting")
    p.add_argument("--config", type=str, default=None, help="YAML settings file")
    p.add_argument("--log-level", type=str, default=None, help="Logging level (default from settings)")
    sub = p.add_subparsers(dest="command", required=True)

    anonymize = sub.add_parser("anonymize", help="Blur every face and write a JPEG")
    anonymize.add_argument("input", type=Path)
    anonymize.add_argument("-o", "--output", type=Path, required=True)
    anonymize.add_argument("--faces", type=str, default=None, help="JSON list of face regions (skips detection)")
    anonymize.add_argument("--seed", type=int, default=None, help="Seed for the noise layer")

    hash_cmd = sub.add_parser("hash", help="Print the 256-bit image hash")
    hash_cmd.add_argument("input", type=Path)

    signature = sub.add_parser("signature", help="Print the face signature")
    signature.add_argument("input", type=Path)
    signature.add_argument("--faces", type=str, default=None, help="JSON list of face regions (skips detection)")

    compare = sub.add_parser("compare", help="Check whether the second photo duplicates the first")
    compare.add_argument("first", type=Path)
    compare.add_argument("second", type=Path)
    compare.add_argument("--mode", choices=[m.value for m in CheckMode], default=CheckMode.AUTHORITATIVE.value)
    compare.add_argument("--threshold", type=int, default=None, help="Override the mode's threshold")
    compare.add_argument("--metric", choices=[m.value for m in SignatureMetric], default=None)

    return p.parse_args(argv)


def build_pipeline(settings: Settings, seed: Optional[int] = None) -> PhotoPipeline:
    detector = LazyFaceDetector(
        detector_factory(settings.detector),
        fallback_confidence=settings.detector.fallback_confidence
    )
    return PhotoPipeline(
        detector,
        ImageProcessor(settings.anonymization, seed=seed),
        jpeg_quality=settings.anonymization.jpeg_quality
    )


def process_file(pipeline: PhotoPipeline, path: Path, faces: Optional[str] = None) -> ProcessedPhoto:
    face_regions = TypeAdapter(List[FaceRegion]).validate_json(faces) if faces else None
    return asyncio.run(pipeline.process(path.read_bytes(), face_regions))


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    settings = Settings.load(args.config) if args.config else get_settings()
    configure_logging(args.log_level or settings.log_level)
    pipeline = build_pipeline(settings, seed=getattr(args, "seed", None))

    try:
        if args.command == "anonymize":
            processed = process_file(pipeline, args.input, args.faces)
            args.output.write_bytes(processed.blurred_image)
            print(f"Anonymized {processed.faces_detected} face(s) -> {args.output}", file=sys.stderr)
            print(json.dumps(processed.to_metadata().model_dump(), indent=2))

        elif args.command == "hash":
            print(process_file(pipeline, args.input, "[]").image_hash)

        elif args.command == "signature":
            print(process_file(pipeline, args.input, args.faces).face_signature)

        elif args.command == "compare":
            metric = SignatureMetric(args.metric or settings.duplicate_detection.signature_metric)
            detector = DuplicateDetector(
                threshold=args.threshold,
                mode=CheckMode(args.mode),
                signature_metric=metric
            )
            first = process_file(pipeline, args.first).fingerprint(photo_id=str(args.first))
            second = process_file(pipeline, args.second).fingerprint(photo_id=str(args.second))

            breakdown = detector.compare(second, first)
            verdict = detector.check(second, [first])
            print(json.dumps({
                "hash_similarity": breakdown.hash_similarity,
                "face_similarity": breakdown.face_similarity,
                "threshold": detector.threshold,
                **verdict.to_dict()
            }, indent=2))

    except (OSError, ImageDecodingError) as e:
        print(f"ERROR: Cannot read input: {e}", file=sys.stderr)
        return 2
    except ValidationError as e:
        print(f"ERROR: Invalid --faces: {e}", file=sys.stderr)
        return 2

    return 0


if __name__ == "__main__":
    raise SystemExit(main())

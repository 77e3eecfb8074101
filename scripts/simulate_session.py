#!/usr/bin/env python3
from __future__ import annotations

import argparse

from compensator import FlexureCompensator
from config import AppConfig, apply_params
from fc_types import Binning, ExposureItem, ImageType
from logging_utils import log_info
from simulator import SimRig, run_lights


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run a simulated imaging session through the flexure compensator.")
    p.add_argument("--lights", type=int, default=30, help="number of light frames")
    p.add_argument("--exposure", type=float, default=300.0, help="light exposure (s)")
    p.add_argument("--flexure-ra", type=float, default=12.0, help="flexure drift in RA (arcsec/h)")
    p.add_argument("--flexure-dec", type=float, default=-6.0, help="flexure drift in Dec (arcsec/h)")
    p.add_argument("--aggressivity", type=float, default=0.5)
    p.add_argument("--after-exposures", type=int, default=1)
    p.add_argument("--min-drift-px", type=float, default=0.3)
    p.add_argument("--max-drift-px", type=float, default=5.0)
    p.add_argument("--flip-at", type=int, default=None, help="meridian flip after this light")
    p.add_argument("--debug", action="store_true")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    cfg = apply_params(
        AppConfig(),
        aggressivity=args.aggressivity,
        after_exposures=args.after_exposures,
        min_drift_limit_px=args.min_drift_px,
        max_drift_limit_px=args.max_drift_px,
        debug=args.debug,
    )
    rig = SimRig(flexure_ra_arcsec_h=args.flexure_ra, flexure_dec_arcsec_h=args.flexure_dec)
    comp = FlexureCompensator(
        cfg,
        camera=rig.camera,
        solver=rig.solver,
        guider=rig.guider,
        telescope=rig.telescope,
        filter_wheel=rig.filter_wheel,
        focuser=rig.focuser,
        hub=rig.hub,
        clock=rig.clock,
    )
    light = ExposureItem(ImageType.LIGHT, float(args.exposure), Binning(1, 1))

    with comp:
        done = 0
        while done < args.lights:
            n = args.lights - done
            if args.flip_at is not None and done < args.flip_at:
                n = min(n, args.flip_at - done)
            run_lights(comp, rig, [light] * n)
            done += n
            if args.flip_at is not None and done == args.flip_at:
                rig.meridian_flip()
            s = comp.get_state()
            log_info(
                None,
                f"Session: {done}/{args.lights} lights - shift rate {s.shift_rate_ra:.2f} | {s.shift_rate_dec:.2f} arcsec/hr "
                f"(target {-args.flexure_ra:.2f} | {-args.flexure_dec:.2f})",
            )

    s = comp.get_state()
    log_info(None, f"Session: done, {s.image_count} lights, snapshots taken: {len(rig.camera.captures)}")
    comp.dispose()


if __name__ == "__main__":
    main()

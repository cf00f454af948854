#!/usr/bin/env python3
import argparse
import asyncio
import os.path
import time

from PermitDisc import (
    DiscError, ExportCoordinator, ExportTarget, PermitJob, Target, compute_layout, render, save_image
)


def main():
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--target',
                             choices=[t.value for t in Target],
                             default=None,
                             help='Which render target to produce (all by default)')
    example_jobs = sorted(PermitJob.example_names())
    args_parser.add_argument('--permit',
                             choices=example_jobs,
                             default=None,
                             help='Which example permit (all by default)')
    args_parser.add_argument('--no-pdf',
                             action='store_true',
                             help='Skip the PDF export')
    cli_args = args_parser.parse_args()
    base_dir = os.path.relpath('examples/')
    os.makedirs(base_dir, exist_ok=True)
    targets = [Target(cli_args.target)] if cli_args.target else Target
    for job_name in ([cli_args.permit] if cli_args.permit else example_jobs):
        print(f'Building example outputs for: {job_name}')
        job = PermitJob.load(job_name)
        try:
            start_time = time.process_time()
            layout = compute_layout(job.record, job.style)
            if layout.degraded:
                print(f' Barcode left blank: {layout.barcode_error}')
            for target in targets:
                rendered = render(layout, target, job.settings)
                print(f' Render time: {round(time.process_time() - start_time, 3)}')
                save_image(rendered, os.path.join(base_dir, f'{job_name}.{target.value.capitalize()}'))
            if not cli_args.no_pdf:
                outcome = asyncio.run(ExportCoordinator(job.settings).run(job.record, job.style, ExportTarget.PDF))
                if outcome.ok:
                    print(f' PDF output for: {job_name} at: {outcome.file.save(base_dir)}')
                else:
                    print(f' PDF export failed for {job_name}: {outcome.message}')
            print(f'Time elapsed: {round(time.process_time() - start_time, 3)}')
        except DiscError as exc:
            print(f'Error processing {job_name}: {exc}; Skipping')


if __name__ == '__main__':
    main()

"""
Django management command to run the ingestion worker.

Usage:
    python manage.py run_worker [--once] [--concurrency N]
"""
from django.core.management.base import BaseCommand, CommandError

from apps.indexing.jobs import QueueMode
from apps.indexing.services import get_ingestion_queue
from apps.indexing.worker import IndexingWorker


class Command(BaseCommand):
    help = 'Run the document ingestion worker'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Process one job and exit (for testing)',
        )
        parser.add_argument(
            '--concurrency',
            type=int,
            default=None,
            help='Number of worker threads (default: INGESTION_WORKERS)',
        )

    def handle(self, *args, **options):
        queue = get_ingestion_queue()
        if queue.backend is None or queue.mode == QueueMode.INLINE:
            raise CommandError(
                'Ingestion queue has no durable backend; jobs run inline in the web process'
            )

        worker = IndexingWorker(queue, concurrency=options['concurrency'])

        if options['once']:
            self.stdout.write('Running worker once...')
            job = worker.run_once()
            if job:
                self.stdout.write(self.style.SUCCESS(f'Processed job {job.id}: {job.status}'))
            else:
                self.stdout.write('No jobs available')
        else:
            self.stdout.write('Starting worker loop...')
            worker.run()

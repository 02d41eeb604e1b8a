from django.core.management.base import BaseCommand

from sales.models import Sale
from sales.services import apply_sale_balance, reconcile_sale_totals


class Command(BaseCommand):
    help = "Compare each sale's paid/due totals with its payment and refund rows."

    def add_arguments(self, parser):
        parser.add_argument(
            "--fix",
            action="store_true",
            help="Rewrite drifted sales from their payment and refund rows.",
        )
        parser.add_argument("--branch-id", dest="branch_id", help="Only check sales of this branch.")

    def handle(self, *args, **options):
        sales = Sale.objects.exclude(sale_status=Sale.SaleStatus.CANCELLED).order_by("created_at")
        if options["branch_id"]:
            sales = sales.filter(branch_id=options["branch_id"])

        drifted = []
        for sale in sales.iterator():
            balance = reconcile_sale_totals(sale)
            if balance.has_drift:
                drifted.append(balance)

        if not drifted:
            self.stdout.write(self.style.SUCCESS("All sale balances match their payments."))
            return

        self.stdout.write(self.style.WARNING(f"Found {len(drifted)} sale(s) with drifted balances."))
        for balance in drifted:
            self.stdout.write(
                f"- {balance.invoice_number}: paid {balance.recorded_paid} -> {balance.expected_paid}, "
                f"due {balance.recorded_due} -> {balance.expected_due}, "
                f"status {balance.recorded_status} -> {balance.expected_status}"
            )

        if not options["fix"]:
            self.stdout.write(self.style.WARNING("Dry run only. Re-run with --fix to rewrite the balances."))
            return

        for balance in drifted:
            apply_sale_balance(balance)
        self.stdout.write(self.style.SUCCESS(f"Reconciled {len(drifted)} sale(s)."))

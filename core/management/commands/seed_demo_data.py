from decimal import Decimal

from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand
from django.db import transaction

from core.models import Branch
from inventory.models import BranchStock, Product, ProductImei
from sales.models import Customer

DEMO_IMEIS = ["356938035643809", "356938035643817", "356938035643825"]


class Command(BaseCommand):
    help = "Seed demo branches, users, catalog and stock for local development."

    def _user(self, User, username, password, **defaults):
        user, created = User.objects.get_or_create(username=username, defaults=defaults)
        if created:
            user.set_password(password)
            user.save(update_fields=["password"])
        return user

    @transaction.atomic
    def handle(self, *args, **options):
        User = get_user_model()

        main, _ = Branch.objects.get_or_create(
            code="MAIN",
            defaults={"name": "Main Branch", "timezone": "UTC", "is_active": True},
        )
        downtown, _ = Branch.objects.get_or_create(
            code="DT01",
            defaults={"name": "Downtown Branch", "timezone": "UTC", "is_active": True},
        )

        self._user(
            User,
            "admin",
            "admin1234",
            email="admin@example.com",
            role=User.Role.ADMIN,
            is_staff=True,
            is_superuser=True,
        )
        self._user(User, "manager", "manager1234", email="manager@example.com", role=User.Role.MANAGER, branch=main)
        self._user(User, "cashier", "cashier1234", email="cashier@example.com", role=User.Role.CASHIER, branch=main)
        self._user(
            User,
            "dtcashier",
            "cashier1234",
            email="dtcashier@example.com",
            role=User.Role.CASHIER,
            branch=downtown,
        )

        charger, _ = Product.objects.get_or_create(
            sku="ACC-CHG-20W",
            defaults={
                "name": "USB-C Charger 20W",
                "category": "Accessories",
                "brand": "Generic",
                "base_price": Decimal("6.00"),
                "wholesale_price": Decimal("8.00"),
                "retail_price": Decimal("12.00"),
                "inventory_type": Product.InventoryType.QUANTITY,
            },
        )
        phone, _ = Product.objects.get_or_create(
            sku="PH-GAL-A55",
            defaults={
                "name": "Galaxy A55 128GB",
                "category": "Phones",
                "brand": "Samsung",
                "base_price": Decimal("280.00"),
                "wholesale_price": Decimal("320.00"),
                "retail_price": Decimal("379.00"),
                "inventory_type": Product.InventoryType.UNIQUE,
            },
        )

        BranchStock.objects.get_or_create(
            branch=main, product=charger, defaults={"quantity": 40, "min_stock_level": 10}
        )
        BranchStock.objects.get_or_create(
            branch=downtown, product=charger, defaults={"quantity": 8, "min_stock_level": 10}
        )

        for imei in DEMO_IMEIS:
            _, created = ProductImei.objects.get_or_create(
                imei=imei,
                defaults={
                    "product": phone,
                    "branch": main,
                    "purchase_price": Decimal("280.00"),
                    "status": ProductImei.Status.AVAILABLE,
                },
            )
            if created:
                entry, _ = BranchStock.objects.get_or_create(branch=main, product=phone)
                entry.quantity += 1
                entry.save(update_fields=["quantity", "updated_at"])

        Customer.objects.get_or_create(
            phone="+201000000001",
            defaults={"name": "Walk-in Demo Customer", "email": "customer@example.com"},
        )

        self.stdout.write(self.style.SUCCESS("Demo data seeded successfully."))
        self.stdout.write(
            "Credentials: admin/admin1234, manager/manager1234, cashier/cashier1234, dtcashier/cashier1234"
        )
        self.stdout.write(f"Branches: {main.code}, {downtown.code} | IMEI-tracked product: {phone.sku}")

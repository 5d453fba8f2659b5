import uuid

from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):
    dependencies = [
        ("inventory", "0002_stockledgerentry"),
        ("sales", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="InvoiceSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("day", models.DateField(unique=True)),
                ("last_serial", models.PositiveIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="ProductRecommendation",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("score", models.DecimalField(decimal_places=4, max_digits=5)),
                ("support", models.DecimalField(decimal_places=4, max_digits=5)),
                ("lift", models.DecimalField(decimal_places=4, max_digits=8)),
                ("co_occurrence", models.PositiveIntegerField()),
                ("analysed_at", models.DateTimeField()),
                ("is_active", models.BooleanField(default=True)),
                ("note", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="recommendations",
                        to="inventory.product",
                    ),
                ),
                (
                    "recommended_product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="recommended_with",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "ordering": ["-score", "-co_occurrence"],
                "indexes": [models.Index(fields=["product", "is_active"], name="recommendation_product_idx")],
                "constraints": [
                    models.UniqueConstraint(fields=("product", "recommended_product"), name="recommendation_unique_pair")
                ],
            },
        ),
    ]

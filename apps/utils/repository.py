import logging

from django.db import DatabaseError, transaction

from apps.utils.exceptions import PersistenceError

logger = logging.getLogger(__name__)


class ModelRepository:
    """
    Narrow per-row access to one model: save, find_by_id, update, delete.

    Every call touches a single row and fails atomically. Nothing here
    spans rows, so callers that need multi-row consistency must compensate
    themselves (see apps.orders.services.OrderSaga).
    """
    model = None

    def save(self, instance):
        try:
            with transaction.atomic():
                instance.save(force_insert=True)
        except DatabaseError as e:
            logger.error(f"{self.model.__name__} insert failed: {e}")
            raise PersistenceError(f"Could not save {self.model.__name__}.") from e
        return instance

    def find_by_id(self, pk):
        try:
            return self.model.objects.filter(pk=pk).first()
        except DatabaseError as e:
            raise PersistenceError(f"Could not load {self.model.__name__} {pk}.") from e

    def update(self, instance, fields=None):
        try:
            if fields:
                fields = list(fields)
                if any(f.name == "updated_at" for f in self.model._meta.fields):
                    fields.append("updated_at")
                with transaction.atomic():
                    instance.save(update_fields=fields)
            else:
                with transaction.atomic():
                    instance.save()
        except DatabaseError as e:
            logger.error(f"{self.model.__name__} {instance.pk} update failed: {e}")
            raise PersistenceError(f"Could not update {self.model.__name__} {instance.pk}.") from e
        return instance

    def delete(self, pk) -> bool:
        try:
            with transaction.atomic():
                deleted, _ = self.model.objects.filter(pk=pk).delete()
        except DatabaseError as e:
            raise PersistenceError(f"Could not delete {self.model.__name__} {pk}.") from e
        return deleted > 0

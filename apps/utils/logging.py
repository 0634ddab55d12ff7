import datetime
import json
import logging


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line.
    Sensitive keys are redacted from dict messages and dict args.
    """

    SENSITIVE_KEYS = {
        'password', 'token', 'secret', 'authorization',
        'card_number', 'cvv', 'signature',
    }

    # Extras that services attach through `extra={...}`
    CONTEXT_FIELDS = ('order_id', 'user_id', 'product_id', 'reason')

    def _scrub(self, data):
        if isinstance(data, dict):
            return {
                k: '***REDACTED***' if str(k).lower() in self.SENSITIVE_KEYS else self._scrub(v)
                for k, v in data.items()
            }
        if isinstance(data, (list, tuple)):
            return [self._scrub(i) for i in data]
        return data

    def format(self, record):
        if isinstance(record.msg, dict):
            record.msg = self._scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = self._scrub(record.args)

        payload = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "lvl": record.levelname,
            "msg": record.getMessage(),
            "logger": record.name,
            "line": record.lineno,
        }

        for field in self.CONTEXT_FIELDS:
            if hasattr(record, field):
                payload[field] = getattr(record, field)

        if record.exc_info:
            payload['exc'] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)

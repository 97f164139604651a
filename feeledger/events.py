import json
import logging
import threading
import time
from datetime import date

import pika
from sqlalchemy import select
from sqlalchemy.orm import Session

from feeledger import ledger, models
from feeledger.database import Database, transaction

EXCHANGE = "ums_events"

logger = logging.getLogger("fee-ledger.events")


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    """Best-effort publish; a broker outage never fails the request that triggered it."""
    if not rabbitmq_url:
        logger.debug("Event publishing disabled, dropping %s", event.get("type"))
        return
    try:
        params = pika.URLParameters(rabbitmq_url)
        connection = pika.BlockingConnection(params)
        try:
            channel = connection.channel()
            channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
            body = json.dumps(event, default=str)
            channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=body)
        finally:
            connection.close()
        logger.info("Published %s on %s", event.get("type"), routing_key)
    except Exception:
        logger.exception("Error publishing %s event", event.get("type"))


def _upsert_student(db: Session, school_id: str, payload: dict) -> models.Student:
    unit_id = payload.get("academic_unit_id")
    if unit_id and db.get(models.AcademicUnit, unit_id) is None:
        db.add(models.AcademicUnit(id=unit_id, school_id=school_id,
                                   name=payload.get("academic_unit_name") or unit_id))

    student = db.get(models.Student, payload["student_id"])
    if student is None:
        student = models.Student(id=payload["student_id"], school_id=school_id)
        db.add(student)
    student.admission_number = payload.get("admission_number") or student.admission_number or payload["student_id"]
    student.full_name = payload.get("full_name") or student.full_name or student.admission_number
    student.email = payload.get("email") or student.email
    student.academic_unit_id = unit_id or student.academic_unit_id
    student.academic_year_id = payload.get("academic_year_id") or student.academic_year_id
    student.user_id = payload.get("user_id") or student.user_id
    db.flush()
    return student


def _process_enrollment_event(body: dict, db: Session):
    """
    Called when Enrollment publishes StudentEnrolled.
    Keeps the local student roster current and, when the event names a fee
    structure, opens the student's ledger entry for it. Redelivered events are no-ops.
    """
    if body.get("type") != "StudentEnrolled":
        logger.info("Ignoring enrollment event of type %s", body.get("type"))
        return None
    payload = body.get("payload", {})
    school_id = payload.get("school_id")
    if not school_id or not payload.get("student_id"):
        logger.warning("StudentEnrolled event without school_id/student_id: %s", payload)
        return None

    with transaction(db):
        student = _upsert_student(db, school_id, payload)
        structure_id = payload.get("fee_structure_id")
        if not structure_id:
            return None
        existing = db.execute(
            select(models.StudentFee).where(
                models.StudentFee.student_id == student.id,
                models.StudentFee.fee_structure_id == structure_id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("Student fee already exists for student=%s structure=%s", student.id, structure_id)
            return existing
        due_date = payload.get("due_date")
        fee = ledger.create_student_fee(
            db, school_id, student.id, structure_id,
            due_date=date.fromisoformat(due_date) if due_date else None,
        )
    return fee


def _consumer_runloop(database: Database, rabbitmq_url: str, queue_name: str = ""):
    """
    Persistent consumer loop: connects, declares exchange & queue, binds and consumes.
    Reconnects on errors with backoff.
    """
    while True:
        conn = None
        try:
            params = pika.URLParameters(rabbitmq_url)
            conn = pika.BlockingConnection(params)
            ch = conn.channel()
            ch.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)

            if queue_name:
                ch.queue_declare(queue=queue_name, durable=True, exclusive=False)
                actual_queue = queue_name
            else:
                q = ch.queue_declare(queue="", exclusive=True)
                actual_queue = q.method.queue

            ch.queue_bind(exchange=EXCHANGE, queue=actual_queue, routing_key="enrollment.events.#")
            logger.info("Enrollment consumer bound queue=%s to %s with key=enrollment.events.#", actual_queue, EXCHANGE)

            def callback(ch, method, properties, body):
                try:
                    message = json.loads(body)
                    db = database.session()
                    try:
                        _process_enrollment_event(message, db)
                    finally:
                        db.close()
                    ch.basic_ack(delivery_tag=method.delivery_tag)
                except Exception:
                    logger.exception("Error processing enrollment message %s", method.delivery_tag)
                    ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)

            ch.basic_qos(prefetch_count=1)
            ch.basic_consume(queue=actual_queue, on_message_callback=callback, auto_ack=False)
            ch.start_consuming()

        except pika.exceptions.AMQPConnectionError as e:
            logger.warning("AMQP connection error in enrollment consumer: %s", e)
        except Exception:
            logger.exception("Unexpected exception in enrollment consumer loop")
        finally:
            if conn is not None and conn.is_open:
                try:
                    conn.close()
                except pika.exceptions.AMQPError:
                    logger.debug("Connection already closing")

        logger.info("Enrollment consumer will reconnect after backoff...")
        time.sleep(3)


_consumer = None


def start_consumer(database: Database, rabbitmq_url: str, queue_name: str = ""):
    global _consumer
    if _consumer is None:
        _consumer = threading.Thread(target=_consumer_runloop, args=(database, rabbitmq_url, queue_name), daemon=True)
        _consumer.start()

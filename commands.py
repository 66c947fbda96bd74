# commands.py - flask CLI: database bootstrap, admin account, terminal AI chat
import os

import click
from flask import current_app
from flask.cli import with_appcontext
from werkzeug.security import generate_password_hash

from ai_chat import AIServiceError, send_ai_message
from auth import create_user
from extensions import db
from models import AIMessage, Resource, Therapist, User

SAMPLE_THERAPISTS = [
    {
        "name": "Dr. Amina Haddad",
        "phone_number": "+1 555 0101",
        "email": "amina.haddad@peerly.example",
        "specialty": "Anxiety & panic disorders",
        "bio": "CBT practitioner with ten years of experience helping adults manage anxiety.",
    },
    {
        "name": "Dr. Lucas Moreau",
        "phone_number": "+1 555 0102",
        "email": "lucas.moreau@peerly.example",
        "specialty": "Depression & mood",
        "bio": "Clinical psychologist focused on depression, grief and life transitions.",
    },
    {
        "name": "Sara Lindqvist, LPC",
        "phone_number": "+1 555 0103",
        "email": "sara.lindqvist@peerly.example",
        "specialty": "Adolescents & families",
        "bio": "Licensed counselor working with teenagers and their families.",
    },
]

SAMPLE_RESOURCES = [
    {
        "title": "Box breathing in four steps",
        "type": "exercise",
        "description": "A short grounding exercise for moments of acute stress.",
        "content": "Inhale for 4 seconds, hold for 4, exhale for 4, hold for 4. Repeat four times.",
        "tags": "anxiety,breathing,grounding",
    },
    {
        "title": "Understanding low mood",
        "type": "article",
        "url": "https://www.nhs.uk/mental-health/feelings-symptoms-behaviours/feelings-and-symptoms/low-mood/",
        "description": "What low mood is and when to ask for help.",
        "tags": "depression,self-care",
    },
]


def _seed():
    for data in SAMPLE_THERAPISTS:
        if not Therapist.query.filter_by(email=data["email"]).first():
            db.session.add(Therapist(**data))
    for data in SAMPLE_RESOURCES:
        if not Resource.query.filter_by(title=data["title"]).first():
            db.session.add(Resource(**data))
    db.session.commit()
    if not User.query.filter_by(email="demo@peerly.example").first():
        create_user("Demo User", "demo@peerly.example", "demo-password")


@click.command("init-db")
@click.option("--seed", is_flag=True, help="Add sample therapists, resources and a demo user.")
@click.option("--reset", is_flag=True, help="Drop every table first.")
@with_appcontext
def init_db(seed, reset):
    """Create the database tables."""
    if reset:
        db.drop_all()
        click.echo("Tables dropped.")
    db.create_all()
    click.echo("Tables created.")
    if seed:
        _seed()
        click.echo(f"Seeded: {Therapist.query.count()} therapists, {Resource.query.count()} resources.")


@click.command("create-admin")
@click.option("--email", default=lambda: os.environ.get("ADMIN_EMAIL", "admin@peerly.example"), show_default="ADMIN_EMAIL")
@click.option("--name", default=lambda: os.environ.get("ADMIN_NAME", "Administrator"), show_default="ADMIN_NAME")
@click.option("--password", default=lambda: os.environ.get("ADMIN_PASSWORD"), show_default="ADMIN_PASSWORD")
@with_appcontext
def create_admin(email, name, password):
    """Create the admin account, or reset its password and admin flag."""
    if not password or len(password) < 8:
        raise click.UsageError("An admin password of at least 8 characters is required (--password or ADMIN_PASSWORD).")
    db.create_all()
    admin = User.query.filter_by(email=email.lower()).first()
    if admin:
        admin.password_hash = generate_password_hash(password)
        admin.is_admin = True
        db.session.commit()
        click.echo(f"Admin {admin.email} updated.")
    else:
        admin = create_user(name, email.lower(), password, is_admin=True)
        click.echo(f"Admin {admin.email} created.")


@click.command("chat-ai")
@click.option("--user-id", type=int, required=True, help="Account the exchanges are stored under.")
@click.option("--conversation-id", type=int, default=None, help="Continue an existing conversation.")
@with_appcontext
def chat_ai(user_id, conversation_id):
    """Talk to the AI companion from the terminal ('exit', 'clear', 'therapists')."""
    user = db.session.get(User, user_id)
    if user is None:
        raise click.UsageError(f"No user with id {user_id}.")

    click.echo("Peerly AI companion. Type 'exit' to quit.")
    while True:
        prompt = click.prompt("You", prompt_suffix="> ").strip()
        if not prompt:
            continue
        command = prompt.lower()
        if command in ("exit", "quit"):
            break
        if command == "clear":
            q = AIMessage.query.filter_by(user_id=user.id, conversation_id=conversation_id)
            removed = q.delete(synchronize_session=False)
            db.session.commit()
            click.echo(f"Cleared {removed} stored exchange(s).")
            continue
        if command == "therapists":
            for t in Therapist.query.order_by(Therapist.name.asc()):
                click.echo(f"- {t.name} ({t.specialty or '-'}) {t.phone_number} | {t.email}")
            continue
        try:
            ai_message, therapists = send_ai_message(user, prompt, conversation_id)
        except AIServiceError as e:
            current_app.logger.info("[AI][CLI] provider failure: %s", e.message)
            click.secho(e.message, fg="red")
            continue
        click.echo(f"Peerly> {ai_message.response}")
        if therapists:
            click.secho(f"({len(therapists)} therapist(s) suggested; type 'therapists' to list them)", fg="cyan")


def register_commands(app):
    app.cli.add_command(init_db)
    app.cli.add_command(create_admin)
    app.cli.add_command(chat_ai)

"""CLI interface for Dynasty Tree."""

import json
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .exceptions import FamilyTreeError

app = typer.Typer(
    name="family-tree",
    help="Family tree relationship graph: members, symmetric edges, projections",
    add_completion=False,
)
console = Console()


def get_config():
    """Load configuration from environment (and .env)."""
    from dotenv import load_dotenv

    from .config import FamilyTreeConfig

    load_dotenv()
    return FamilyTreeConfig.from_env()


def get_service(db: Path | None):
    from .logging import configure_logging
    from .service import FamilyTreeService

    config = get_config()
    level = config.log_level if config.log_level in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO"
    configure_logging(level)
    return FamilyTreeService.from_path(db, config=config)


@contextmanager
def handle_errors():
    """Turn typed failures into a red message and exit code 1."""
    try:
        yield
    except FamilyTreeError as e:
        console.print(f"[red]Error ({type(e).__name__}): {escape(str(e))}[/red]")
        raise typer.Exit(1)


@app.command("create-tree")
def create_tree(
    name: str = typer.Argument(..., help="Tree name"),
    owner: str = typer.Option(..., "--owner", help="Owner account id"),
    first_name: str = typer.Option(None, "--first", help="Owner's first name"),
    last_name: str = typer.Option(None, "--last", help="Owner's last name"),
    description: str = typer.Option(None, "--description", "-d"),
    privacy: str = typer.Option("private", "--privacy", help="public|private|shared"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Create a tree together with the owner's member."""
    profile = None
    if first_name or last_name:
        profile = {"first_name": first_name or "", "last_name": last_name or ""}
    with handle_errors():
        service = get_service(db)
        tree = service.create_tree(
            name,
            description,
            privacy,
            owner,
            profile,
        )
    console.print(f"[green]Created tree {tree.name}[/green]")
    console.print(str(tree.tree_id))


@app.command("trees")
def list_trees(
    account: str = typer.Option(..., "--account", help="Account id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """List trees an account owns or has access to."""
    with handle_errors():
        service = get_service(db)
        trees = service.get_user_trees(account)
    if not trees:
        console.print(f"[yellow]No trees for {account}[/yellow]")
        return

    table = Table(title="Family Trees")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Privacy")
    table.add_column("Owner")
    for tree in trees:
        table.add_row(str(tree.tree_id), tree.name, tree.privacy_level.value, tree.owner_id)
    console.print(table)


@app.command("access")
def list_access(
    tree_id: str = typer.Argument(..., help="Tree id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """List the accounts that can open a tree and their roles."""
    with handle_errors():
        service = get_service(db)
        tree = service.get_tree(tree_id)
        rows = service.list_access(tree.tree_id)

    table = Table(title=f"Access: {tree.name}")
    table.add_column("Account")
    table.add_column("Role")
    table.add_column("Since", style="dim")
    for access in rows:
        owner = " (owner)" if access.account_id == tree.owner_id else ""
        table.add_row(f"{access.account_id}{owner}", access.role.value, access.created_at.date().isoformat())
    console.print(table)

@app.command("add-member")
def add_member(
    tree_id: str = typer.Argument(..., help="Tree id"),
    first_name: str = typer.Option(..., "--first"),
    last_name: str = typer.Option(..., "--last"),
    gender: str = typer.Option("other", "--gender", help="male|female|other"),
    born: str = typer.Option(None, "--born", help="Date of birth (YYYY-MM-DD)"),
    email: str = typer.Option(None, "--email"),
    account: str = typer.Option(None, "--account", help="Link to this account immediately"),
    actor: str = typer.Option(..., "--as", help="Account id performing the change"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Add a member; pending unless --account is given."""
    profile = {"first_name": first_name, "last_name": last_name, "gender": gender}
    if born:
        profile["date_of_birth"] = born
    if email:
        profile["email"] = email
    with handle_errors():
        service = get_service(db)
        service.require_mutate(tree_id, actor)
        member = service.add_member(tree_id, profile, account_id=account)
    state = "pending" if member.is_pending else "claimed"
    console.print(f"[green]Added {member.display_name} ({state})[/green]")
    console.print(str(member.member_id))


@app.command("relate")
def relate(
    tree_id: str = typer.Argument(..., help="Tree id"),
    from_member: str = typer.Argument(..., help="Member the edge starts at"),
    to_member: str = typer.Argument(..., help="Member the edge points to"),
    relationship_type: str = typer.Argument(..., help="parent|child|spouse (FROM is TYPE of TO)"),
    actor: str = typer.Option(..., "--as", help="Account id performing the change"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Add a relationship and its inverse."""
    with handle_errors():
        service = get_service(db)
        service.require_mutate(tree_id, actor)
        rel = service.add_relationship(tree_id, from_member, to_member, relationship_type)
    console.print(f"[green]Related ({rel.relationship_type.value})[/green]")
    console.print(str(rel.relationship_id))


@app.command("unrelate")
def unrelate(
    relationship_id: str = typer.Argument(..., help="Either edge of the pair"),
    actor: str = typer.Option(..., "--as", help="Account id performing the change"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Remove a relationship and its inverse."""
    with handle_errors():
        service = get_service(db)
        rel = service.get_relationship(relationship_id)
        service.require_mutate(rel.tree_id, actor)
        result = service.remove_relationship(rel.relationship_id)
    console.print(f"[green]Removed {len(result.deleted_ids)} edge(s)[/green]")
    if result.partner_missing:
        console.print("[yellow]Inverse edge was missing[/yellow]")


@app.command("remove-member")
def remove_member(
    member_id: str = typer.Argument(..., help="Member id"),
    actor: str = typer.Option(..., "--as", help="Account id performing the change"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Delete a member and every edge touching it."""
    with handle_errors():
        service = get_service(db)
        member = service.get_member(member_id)
        service.require_mutate(member.tree_id, actor)
        removed = service.delete_member(member.member_id)
    console.print(f"[green]Deleted {member.display_name} and {removed} edge(s)[/green]")


@app.command("claim")
def claim(
    member_id: str = typer.Argument(..., help="Pending member id"),
    account: str = typer.Option(..., "--account", help="Account claiming the member"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Link a pending member to an account."""
    with handle_errors():
        service = get_service(db)
        member = service.claim_member(member_id, account)
    console.print(f"[green]{member.display_name} claimed by {member.account_id}[/green]")


@app.command("invite")
def invite(
    tree_id: str = typer.Argument(..., help="Tree id"),
    email: str = typer.Argument(..., help="Invitee email"),
    role: str = typer.Option("viewer", "--role", help="admin|editor|viewer"),
    first_name: str = typer.Option(None, "--first", help="Prefill first name"),
    last_name: str = typer.Option(None, "--last", help="Prefill last name"),
    actor: str = typer.Option(..., "--as", help="Account id performing the change"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Invite an email address to a tree."""
    prefill = None
    if first_name or last_name:
        prefill = {"first_name": first_name or "", "last_name": last_name or "", "email": email}
    with handle_errors():
        service = get_service(db)
        service.require_mutate(tree_id, actor)
        invitation = service.invite_member(tree_id, actor, email, role=role, prefill=prefill)
    console.print(f"[green]Invited {invitation.invitee_email} as {invitation.role.value}[/green]")
    console.print(str(invitation.invitation_id))


@app.command("accept")
def accept(
    invitation_id: str = typer.Argument(..., help="Invitation id"),
    account: str = typer.Option(..., "--account", help="Accepting account id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Accept an invitation."""
    with handle_errors():
        service = get_service(db)
        accepted = service.accept_invitation(invitation_id, account)
    console.print(
        f"[green]{account} joined as {accepted.access.role.value} "
        f"({accepted.member.display_name})[/green]"
    )


@app.command("show")
def show(
    tree_id: str = typer.Argument(..., help="Tree id"),
    focus: str = typer.Option(None, "--focus", "-f", help="Centre on this member"),
    depth: int = typer.Option(None, "--depth", help="Hops around --focus (default FAMILY_TREE_DEFAULT_DEPTH)"),
    as_json: bool = typer.Option(False, "--json", help="Print projected nodes as JSON"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Show the projected nodes of a tree."""
    with handle_errors():
        service = get_service(db)
        if focus and depth is None:
            depth = service.config.default_depth
        projection = service.get_tree_with_projected_nodes(tree_id, focus=focus, depth=depth)

    if as_json:
        typer.echo(json.dumps(projection.to_dict(), indent=2, default=str))
        return

    names = {node.id: node.attributes.get("displayName") or node.id for node in projection.nodes}
    table = Table(title=projection.tree.name if projection.tree else "Family Tree")
    table.add_column("Member")
    table.add_column("Parents")
    table.add_column("Children")
    table.add_column("Siblings")
    table.add_column("Spouses")
    table.add_column("Flags")
    for node in projection.nodes:
        flags = []
        if node.is_pending:
            flags.append("pending")
        if not node.is_blood_related:
            flags.append("in-law")
        if node.has_hidden_subtree:
            flags.append("more")
        table.add_row(
            names[node.id],
            ", ".join(names.get(i, i[:8]) for i in node.parent_ids),
            ", ".join(names.get(i, i[:8]) for i in node.child_ids),
            ", ".join(f"{names.get(r.id, r.id[:8])} ({r.type.value})" for r in node.siblings),
            ", ".join(names.get(i, i[:8]) for i in node.spouse_ids),
            " ".join(flags),
        )
    console.print(table)

    if projection.violations:
        console.print(f"[yellow]{len(projection.violations)} asymmetric edge(s); run `audit`[/yellow]")


@app.command("audit")
def audit(
    tree_id: str = typer.Argument(..., help="Tree id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Report edges stored without their inverse."""
    with handle_errors():
        service = get_service(db)
        violations = service.audit_tree(tree_id)
    if not violations:
        console.print("[green]All edges have their inverse[/green]")
        return

    table = Table(title="Consistency Violations")
    table.add_column("Relationship", style="dim")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Type")
    for v in violations:
        table.add_row(
            str(v.ids.get("relationship_id")),
            str(v.ids.get("from_member_id")),
            str(v.ids.get("to_member_id")),
            str(v.ids.get("relationship_type")),
        )
    console.print(table)
    raise typer.Exit(1)


@app.command()
def stats(
    tree_id: str = typer.Argument(..., help="Tree id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path (default: FAMILY_TREE_DB_PATH)"),
):
    """Show member and relationship counts for a tree."""
    with handle_errors():
        service = get_service(db)
        statistics = service.tree_statistics(tree_id)

    table = Table(title="Tree Statistics")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("Members", str(statistics.get("members", 0)))
    table.add_row("Pending", str(statistics.get("pending_members", 0)))
    for rel_type, count in sorted(statistics.get("relationships", {}).items()):
        table.add_row(f"Edges ({rel_type})", str(count))
    table.add_row("Edges (total)", str(statistics.get("total_relationships", 0)))
    console.print(Panel(table, title=f"[bold]{tree_id}[/bold]"))


if __name__ == "__main__":
    app()

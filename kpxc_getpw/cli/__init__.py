from .commands import (
    GetLogin,
    GetPassword,
    build_parser,
    execute,
    fetch_entries,
    find_entry,
    main,
    render,
    run,
    select_logins,
    )

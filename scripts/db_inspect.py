import os, sqlite3, sys

DBS = [
    os.path.join(os.getcwd(), 'recordings.db'),
    os.path.join(os.getcwd(), 'instance', 'recordings.db'),
]

def inspect(db):
    print(f"\n=== {db} ===")
    if not os.path.exists(db):
        print("missing")
        return
    conn = sqlite3.connect(db)
    cur = conn.cursor()
    def q(sql, params=()):
        cur.execute(sql, params)
        return cur.fetchall()
    try:
        print('status counts:', q('select status, count(*) from recording_jobs group by status order by status'))
        print('active:', q("select id,room_id,owner_id,start_time from recording_jobs where status in ('recording','processing') order by start_time"))
        print('pending offload:', q('select id,scratch_file_path from recording_jobs where scratch_file_path is not null'))
        print('next expiries:', q("select id,room_name,retention_deadline from recording_jobs where status='completed' order by retention_deadline limit 10"))
    except Exception as e:
        print('error:', e)
    finally:
        conn.close()

if __name__ == '__main__':
    for db in (sys.argv[1:] or DBS):
        inspect(db)
    print('\nDone.')

"""Captured source metadata shared by the clone tests."""

CONTROL_TRACE = """\
-- The following are current System-scope REDO Log Archival related
-- parameters and can be included in the database initialization file.
--
-- LOG_ARCHIVE_DEST=''
--
--     Set #2. RESETLOGS case
--
STARTUP NOMOUNT
CREATE CONTROLFILE REUSE DATABASE "PROD" RESETLOGS FORCE LOGGING ARCHIVELOG
    MAXLOGFILES 16
    MAXLOGMEMBERS 3
    MAXDATAFILES 100
    MAXINSTANCES 8
    MAXLOGHISTORY 292
LOGFILE
  GROUP 1 '+REDO/PROD/ONLINELOG/group_1.257.1101' SIZE 200M BLOCKSIZE 512,
  GROUP 2 '+REDO/PROD/ONLINELOG/group_2.258.1101' SIZE 200M BLOCKSIZE 512
-- STANDBY LOGFILE
DATAFILE
  '+DATA/PROD/DATAFILE/system.256.1101',
  '+DATA/PROD/DATAFILE/sysaux.257.1101',
  '+DATA/PROD/DATAFILE/undotbs1.258.1101',
  '+DATA/PROD/DATAFILE/users.259.1101'
CHARACTER SET AL32UTF8
;

-- Commands to re-create incarnation table
-- Below log names MUST be changed to existing filenames on
-- disk. Any one log file from each branch can be used to
-- re-create incarnation records.
-- ALTER DATABASE REGISTER LOGFILE '+FRA';
-- Recovery is required if any of the datafiles are restored backups,
-- or if the last shutdown was not normal or immediate.
RECOVER DATABASE USING BACKUP CONTROLFILE

-- Database can now be opened zeroing the online logs.
ALTER DATABASE OPEN RESETLOGS;

-- Commands to add tempfiles to temporary tablespaces.
-- Online tempfiles have complete space information.
-- Other tempfiles may require adjustment.
ALTER TABLESPACE TEMP ADD TEMPFILE '+TEMP/PROD/TEMPFILE/temp.263.1101'
     SIZE 1024M REUSE AUTOEXTEND ON NEXT 655360  MAXSIZE 32767M;
-- End of tempfile additions.
--
"""

PARAMETER_TEXT = """\
prod.__db_cache_size=1207959552
prod.__shared_pool_size=402653184
*.audit_file_dest='/u01/app/oracle/admin/PROD/adump'
*.audit_trail='db'
*.compatible='19.0.0'
*.control_files='+DATA/PROD/CONTROLFILE/current.260.1101',
'+REDO/PROD/CONTROLFILE/current.261.1101'
*.db_block_size=8192
*.db_create_file_dest='+DATA'
*.db_name='PROD'
*.db_recovery_file_dest='+FRA'
*.db_recovery_file_dest_size=10g
*.db_unique_name='PROD_SITE1'
*.diagnostic_dest='/u01/app/oracle'
*.log_archive_dest_1='LOCATION=+FRA'
*.log_archive_format='%t_%s_%r.arc'
*.memory_target=4g
*.open_cursors=300
*.processes=300
*.remote_login_passwordfile='EXCLUSIVE'
*.undo_tablespace='UNDOTBS1'
"""

DISK_INVENTORY = """\
DATA /dev/mapper/prod_data01
DATA /dev/mapper/prod_data02
REDO /dev/mapper/prod_redo01
TEMP /dev/mapper/prod_temp01
"""
